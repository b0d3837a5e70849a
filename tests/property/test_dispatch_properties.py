"""
Property-Based Tests for the Dispatch Engine

Tests universal properties of emergency state and geo fan-out using Hypothesis.
"""

import tempfile
from contextlib import contextmanager
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from lifeline.core.database import DatabaseManager
from lifeline.core.geo import EARTH_RADIUS_M, distance
from lifeline.models.emergency import Coordinates, RealtimeEvent, UserRecord
from lifeline.services.dispatch.dispatch_engine import DispatchConfig, DispatchEngine
from lifeline.services.dispatch.emergency_store import EmergencyStore
from lifeline.services.dispatch.errors import NotFoundError
from lifeline.services.dispatch.user_directory import UserDirectory
from tests.mocks.dispatch_mocks import (
    MockAEDIndex, MockPushSender, MockTriageService, RecordingTransport
)
from tests.utils import ORIGIN, north_of


OWNERS = ["alice", "bob"]


@contextmanager
def temp_database():
    """Context manager for temporary database"""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = DatabaseManager(str(Path(tmpdir) / "dispatch.db"), max_connections=2)
        try:
            yield db
        finally:
            db.close()


def build_engine(db, transport, fanout_radius_m=500000):
    users = UserDirectory(db)
    for user_id in OWNERS + ["watcher"]:
        users.upsert_user(UserRecord(id=user_id, username=user_id, name=user_id,
                                     location=Coordinates(*ORIGIN), session_epoch=1))
    return DispatchEngine(
        store=EmergencyStore(db),
        users=users,
        transport=transport,
        aed_index=MockAEDIndex(aeds=[]),
        triage=MockTriageService(enabled=False),
        push=MockPushSender(),
        config=DispatchConfig(fanout_radius_m=fanout_radius_m)
    )


coordinate = st.fixed_dictionaries({
    'latitude': st.floats(min_value=-90, max_value=90, allow_nan=False),
    'longitude': st.floats(min_value=-180, max_value=180, allow_nan=False),
})

operation = st.tuples(
    st.sampled_from(["raise", "cancel", "expire", "disconnect"]),
    st.sampled_from(OWNERS)
)


class TestEmergencyStateProperties:

    @settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(operations=st.lists(operation, min_size=1, max_size=12))
    @pytest.mark.asyncio
    async def test_at_most_one_active_emergency_per_user(self, operations):
        """
        For any interleaving of raise, cancel, expiry and disconnect, each user
        owns at most one active emergency, and every deactivation is announced
        exactly once.
        """
        with temp_database() as db:
            transport = RecordingTransport()
            engine = build_engine(db, transport)
            await engine.subscribe("watcher", "w1")
            deactivations = 0

            try:
                for action, owner in operations:
                    active = engine.store.list_active_for_owner(owner)

                    if action == "raise":
                        await engine.raise_emergency(owner, {'latitude': ORIGIN[0], 'longitude': ORIGIN[1]})
                        deactivations += len(active)
                    elif action == "cancel":
                        if active:
                            await engine.cancel_emergency(owner, {'emergencyId': active[0].id})
                            deactivations += 1
                        else:
                            with pytest.raises(NotFoundError):
                                await engine.cancel_emergency(owner, {'emergencyId': 'missing'})
                    elif action == "expire":
                        if active:
                            assert await engine.expire_emergency(active[0].id, owner) is True
                            deactivations += 1
                    else:
                        deactivations += await engine.handle_disconnect(owner, f"{owner}-conn", 0)

                    for user_id in OWNERS:
                        assert len(engine.store.list_active_for_owner(user_id)) <= 1

                cancelled = transport.events(RealtimeEvent.CANCELLED, "w1")
                assert len(cancelled) == deactivations
                assert len({c['emergencyId'] for c in cancelled}) == deactivations
            finally:
                await engine.stop()

    @settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(meters=st.floats(min_value=0, max_value=1000000).filter(lambda m: abs(m - 500000) > 1))
    @pytest.mark.asyncio
    async def test_fan_out_matches_radius(self, meters):
        """A subscribed responder is notified exactly when within the fan-out radius."""
        with temp_database() as db:
            transport = RecordingTransport()
            engine = build_engine(db, transport)
            engine.users.update_location("watcher", north_of(meters))
            await engine.subscribe("watcher", "w1")

            try:
                await engine.raise_emergency("alice", {'latitude': ORIGIN[0], 'longitude': ORIGIN[1]})
                nearby = transport.events(RealtimeEvent.NEARBY, "w1")

                if meters <= 500000:
                    assert len(nearby) == 1
                    assert nearby[0]['distance'] == pytest.approx(meters, abs=1)
                else:
                    assert nearby == []
            finally:
                await engine.stop()


class TestDistanceProperties:

    @given(a=coordinate, b=coordinate)
    def test_symmetric_and_bounded(self, a, b):
        d = distance(a, b)
        assert d >= 0
        assert d <= EARTH_RADIUS_M * 3.141593
        assert d == pytest.approx(distance(b, a), abs=1e-6)

    @given(a=coordinate)
    def test_zero_for_identical_points(self, a):
        assert distance(a, a) == pytest.approx(0, abs=1e-6)

    @given(a=coordinate, b=coordinate, c=coordinate)
    def test_triangle_inequality(self, a, b, c):
        assert distance(a, c) <= distance(a, b) + distance(b, c) + 1.0
