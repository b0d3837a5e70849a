"""
WebSocket Integration Tests for the Realtime Gateway

Drives the FastAPI application end to end through TestClient: handshake
refusals, acknowledgements, raise and cancel fan-out between two clients, and
cleanup when the last socket of a user closes.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from lifeline.models.emergency import RealtimeEvent
from lifeline.services.dispatch.dispatch_engine import DispatchEngine
from lifeline.services.dispatch.location_ingest import LocationIngest
from lifeline.services.dispatch.session_binder import SessionBinder
from lifeline.services.realtime.gateway import (
    CLOSE_FORBIDDEN, CLOSE_UNAUTHORIZED, ConnectionManager, RealtimeGateway
)
from tests.utils import ORIGIN, TEST_SECRET, make_token, north_of


RAISE_AT_ORIGIN = {'latitude': ORIGIN[0], 'longitude': ORIGIN[1]}


def token_for(user_id, epoch=1, **kwargs):
    return make_token({'sub': user_id, 'sessionEpoch': epoch}, **kwargs)


def send(ws, event, data=None, ack=None):
    frame = {'event': event, 'data': data or {}}
    if ack is not None:
        frame['ack'] = ack
    ws.send_json(frame)


def request(ws, event, data=None, ack=1):
    """Send a frame and wait for its acknowledgement"""
    send(ws, event, data, ack)
    message = ws.receive_json()
    assert message['event'] == RealtimeEvent.ACK
    assert message['ack'] == ack
    return message['data']


@pytest.fixture
def gateway(store, users, aed_index, triage, push, dispatch_config, make_user):
    make_user("alice", location=north_of(0))
    make_user("bob", location=north_of(2000))
    make_user("carol", location=north_of(600000))

    connections = ConnectionManager()
    engine = DispatchEngine(
        store=store,
        users=users,
        transport=connections,
        aed_index=aed_index,
        triage=triage,
        push=push,
        config=dispatch_config
    )
    binder = SessionBinder(users, TEST_SECRET)
    return RealtimeGateway(engine, binder, LocationIngest(users), connections)


@pytest.fixture
def client(gateway):
    with TestClient(gateway.app) as test_client:
        yield test_client


class TestHandshake:
    """Connection refusal and acceptance"""

    def test_missing_token_refused(self, client):
        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()
            assert message['event'] == RealtimeEvent.CONNECT_ERROR
            assert message['data']['code'] == "INVALID_TOKEN"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_bad_signature_refused(self, client):
        token = token_for("alice", secret="wrong-secret")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            assert ws.receive_json()['data']['code'] == "INVALID_TOKEN"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_expired_token_refused(self, client):
        token = token_for("alice", expires_in=-60)
        with client.websocket_connect(f"/ws?token={token}") as ws:
            assert ws.receive_json()['data']['code'] == "INVALID_TOKEN"

    def test_unknown_user_refused(self, client):
        with client.websocket_connect(f"/ws?token={token_for('mallory')}") as ws:
            message = ws.receive_json()
            assert message['data']['code'] == "UNKNOWN_USER"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_stale_session_epoch_refused(self, client):
        with client.websocket_connect(f"/ws?token={token_for('alice', epoch=0)}") as ws:
            message = ws.receive_json()
            assert message['event'] == RealtimeEvent.CONNECT_ERROR
            assert message['data']['code'] == "DEVICE_MISMATCH"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == CLOSE_FORBIDDEN

    def test_authorization_header_accepted(self, client, gateway):
        headers = {'Authorization': f"Bearer {token_for('alice')}"}
        with client.websocket_connect("/ws", headers=headers) as ws:
            assert request(ws, RealtimeEvent.SUBSCRIBE) == {'status': 'ok'}
            assert gateway.engine.registry.is_subscribed("alice", next(iter(
                gateway.connections.connections_for_user("alice"))))


class TestFrames:
    """Acknowledgements and error reporting"""

    def test_unknown_event(self, client):
        with client.websocket_connect(f"/ws?token={token_for('alice')}") as ws:
            ack = request(ws, "emergency:explode", ack="x1")
            assert ack == {'status': 'error', 'message': "Unknown event"}

    def test_location_update(self, client, users):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as ws:
            ack = request(ws, RealtimeEvent.LOCATION_UPDATE,
                          {'latitude': 1.35, 'longitude': 103.9})
            assert ack == {'status': 'ok'}

        bob = users.get_user("bob")
        assert bob.location.latitude == pytest.approx(1.35)
        assert bob.location.longitude == pytest.approx(103.9)

    def test_invalid_location_rejected(self, client):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as ws:
            ack = request(ws, RealtimeEvent.LOCATION_UPDATE, {'latitude': "north"})
            assert ack == {'status': 'error', 'message': "Invalid location payload"}

    def test_invalid_raise_rejected(self, client, store):
        with client.websocket_connect(f"/ws?token={token_for('alice')}") as ws:
            ack = request(ws, RealtimeEvent.RAISE, {'latitude': None, 'longitude': 103.8})
            assert ack == {'status': 'error', 'message': "Invalid coordinates"}
        assert store.list_for_owner("alice") == []

    def test_frame_without_ack_gets_no_reply(self, client):
        with client.websocket_connect(f"/ws?token={token_for('alice')}") as ws:
            send(ws, RealtimeEvent.SUBSCRIBE)
            send(ws, "not-a-real-event")
            # Frames are handled in order, so the next reply is this ack
            assert request(ws, RealtimeEvent.UNSUBSCRIBE, ack=7) == {'status': 'ok'}

    def test_malformed_frame_is_dropped(self, client):
        with client.websocket_connect(f"/ws?token={token_for('alice')}") as ws:
            ws.send_text("{not json")
            ws.send_json({'data': {}})
            assert request(ws, RealtimeEvent.SUBSCRIBE, ack=2) == {'status': 'ok'}


class TestDispatchFlow:
    """Raise, cancel and disconnect across two live clients"""

    def test_raise_reaches_nearby_subscriber(self, client, store):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as bob, \
                client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
            assert request(bob, RealtimeEvent.SUBSCRIBE) == {'status': 'ok'}

            ack = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)
            assert ack['status'] == 'ok'
            assert ack['nearestAEDs'][0]['description'] == "Lobby"

            nearby = bob.receive_json()
            assert nearby['event'] == RealtimeEvent.NEARBY
            assert nearby['data']['emergencyId'] == ack['emergencyId']
            assert nearby['data']['ownerId'] == "alice"
            assert nearby['data']['distance'] == pytest.approx(2000, abs=1)
            assert nearby['data']['requester']['name'] == "Alice"

            assert store.get(ack['emergencyId']).is_active

    def test_cancel_reaches_subscriber_without_reason(self, client, store):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as bob, \
                client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
            request(bob, RealtimeEvent.SUBSCRIBE)
            emergency_id = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)['emergencyId']
            assert bob.receive_json()['event'] == RealtimeEvent.NEARBY

            assert request(alice, RealtimeEvent.CANCEL, {'emergencyId': emergency_id}, ack=2) == \
                {'status': 'ok'}

            cancelled = bob.receive_json()
            assert cancelled['event'] == RealtimeEvent.CANCELLED
            assert cancelled['data'] == {'emergencyId': emergency_id, 'ownerId': "alice"}
            assert not store.get(emergency_id).is_active

    def test_cancel_of_foreign_emergency_not_found(self, client, store):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as bob, \
                client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
            emergency_id = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)['emergencyId']

            ack = request(bob, RealtimeEvent.CANCEL, {'emergencyId': emergency_id})

            assert ack == {'status': 'error', 'message': "Emergency not found"}
            assert store.get(emergency_id).is_active

    def test_second_raise_supersedes_first(self, client, store):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as bob, \
                client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
            request(bob, RealtimeEvent.SUBSCRIBE)
            first = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)['emergencyId']
            bob.receive_json()

            second = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN, ack=2)['emergencyId']

            cancelled = bob.receive_json()
            assert cancelled['event'] == RealtimeEvent.CANCELLED
            assert cancelled['data'] == {'emergencyId': first, 'ownerId': "alice", 'reason': "superseded"}
            assert bob.receive_json()['data']['emergencyId'] == second
            assert [e.id for e in store.list_active_for_owner("alice")] == [second]

    def test_out_of_range_subscriber_not_notified(self, client):
        with client.websocket_connect(f"/ws?token={token_for('carol')}") as carol, \
                client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
            request(carol, RealtimeEvent.SUBSCRIBE)
            request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)

            # Next thing carol sees is her own ack, not a nearby event
            assert request(carol, RealtimeEvent.UNSUBSCRIBE, ack=5) == {'status': 'ok'}

    def test_last_disconnect_cancels_emergency(self, client, store, gateway):
        with client.websocket_connect(f"/ws?token={token_for('bob')}") as bob:
            request(bob, RealtimeEvent.SUBSCRIBE)

            with client.websocket_connect(f"/ws?token={token_for('alice')}") as alice:
                emergency_id = request(alice, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)['emergencyId']
                assert bob.receive_json()['event'] == RealtimeEvent.NEARBY

            cancelled = bob.receive_json()
            assert cancelled['event'] == RealtimeEvent.CANCELLED
            assert cancelled['data']['emergencyId'] == emergency_id
            assert cancelled['data']['reason'] == "disconnected"

        assert not store.get(emergency_id).is_active
        assert gateway.connections.connections_for_user("alice") == set()

    def test_other_socket_keeps_emergency_alive(self, client, store):
        token = token_for('alice')
        with client.websocket_connect(f"/ws?token={token}") as phone:
            with client.websocket_connect(f"/ws?token={token}") as tablet:
                emergency_id = request(tablet, RealtimeEvent.RAISE, RAISE_AT_ORIGIN)['emergencyId']

            # The phone is still connected; a round trip lets the disconnect settle
            assert request(phone, RealtimeEvent.SUBSCRIBE) == {'status': 'ok'}
            assert store.get(emergency_id).is_active


class TestHealth:

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == "healthy"
        assert body['activeConnections'] == 0
        assert body['subscribers'] == 0
        assert body['timestamp'].endswith("Z")
        assert body['dispatch']['running'] is True
        assert body['dispatch']['armed_timers'] == 0
