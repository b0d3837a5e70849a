"""
Unit tests for the emergency store and user directory
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from lifeline.core.database import DatabaseError
from lifeline.models.emergency import (
    AEDLocation, Coordinates, DeactivationReason, Emergency, EmergencyState,
    TriageAssessment, utcnow
)
from lifeline.services.dispatch.emergency_store import EmergencyStore
from lifeline.services.dispatch.errors import PersistenceError


def new_emergency(owner_id, ttl=600, **kwargs):
    now = utcnow()
    return Emergency(
        owner_id=owner_id,
        origin=Coordinates(1.30, 103.80),
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
        **kwargs
    )


class TestEmergencyStore:

    def test_create_and_get(self, store, make_user):
        make_user("alice")
        emergency = store.create(new_emergency("alice", accuracy=12.5, image="data:image/png;base64,AAAA"))

        loaded = store.get(emergency.id)
        assert loaded is not None
        assert loaded.owner_id == "alice"
        assert loaded.is_active
        assert loaded.state == EmergencyState.ACTIVE
        assert loaded.origin == Coordinates(1.30, 103.80)
        assert loaded.accuracy == 12.5
        assert loaded.expires_at == emergency.expires_at
        assert loaded.created_at.tzinfo is not None

    def test_get_unknown(self, store):
        assert store.get("missing") is None

    def test_second_active_emergency_is_rejected(self, store, make_user):
        make_user("alice")
        store.create(new_emergency("alice"))

        with pytest.raises(PersistenceError, match="Failed to save emergency"):
            store.create(new_emergency("alice"))

        assert len(store.list_active_for_owner("alice")) == 1

    def test_deactivate_is_compare_and_set(self, store, make_user):
        make_user("alice")
        emergency = store.create(new_emergency("alice"))

        assert store.deactivate_if_active(emergency.id, DeactivationReason.CANCELLED, "alice") is True
        assert store.deactivate_if_active(emergency.id, DeactivationReason.EXPIRED, "alice") is False

        loaded = store.get(emergency.id)
        assert loaded.is_active is False
        assert loaded.deactivation_reason == DeactivationReason.CANCELLED
        assert loaded.deactivated_at is not None

    def test_deactivate_foreign_emergency_fails(self, store, make_user):
        make_user("alice")
        make_user("bob")
        emergency = store.create(new_emergency("alice"))

        assert store.deactivate_if_active(emergency.id, DeactivationReason.CANCELLED, "bob") is False
        assert store.get(emergency.id).is_active

    def test_inactive_records_are_retained(self, store, make_user):
        make_user("alice")
        first = store.create(new_emergency("alice"))
        store.deactivate_if_active(first.id, DeactivationReason.SUPERSEDED)
        second = store.create(new_emergency("alice"))

        history = store.list_for_owner("alice")
        assert {e.id for e in history} == {first.id, second.id}
        assert [e.id for e in store.list_active_for_owner("alice")] == [second.id]

    def test_list_active_filters_expired(self, store, make_user):
        make_user("alice")
        make_user("bob")
        stale = store.create(new_emergency("alice", ttl=-5))
        fresh = store.create(new_emergency("bob"))

        assert {e.id for e in store.list_active()} == {stale.id, fresh.id}
        assert [e.id for e in store.list_active(now=utcnow())] == [fresh.id]

    def test_attach_summary_and_aeds(self, store, make_user):
        make_user("alice")
        emergency = store.create(new_emergency("alice"))

        summary = TriageAssessment(condition="Fracture", severity="High")
        aeds = [AEDLocation(1.3001, 103.8001, "Lobby", distance=15.2, extra={"floor": 1})]

        assert store.attach_ai_summary(emergency.id, summary)
        assert store.attach_aed_snapshot(emergency.id, aeds)

        loaded = store.get(emergency.id)
        assert loaded.ai_summary.condition == "Fracture"
        assert loaded.ai_summary.action == "Proceed with standard protocol."
        assert loaded.nearest_aeds[0].description == "Lobby"
        assert loaded.nearest_aeds[0].extra == {"floor": 1}

    def test_database_failure_becomes_persistence_error(self):
        db = Mock()
        db.execute_update.side_effect = DatabaseError("disk I/O error")
        store = EmergencyStore(db)

        with pytest.raises(PersistenceError):
            store.create(new_emergency("alice"))
        with pytest.raises(PersistenceError):
            store.deactivate_if_active("e1", DeactivationReason.CANCELLED)
        assert store.attach_ai_summary("e1", TriageAssessment()) is False


class TestUserDirectory:

    def test_upsert_and_get(self, users, make_user):
        make_user("alice", location=Coordinates(1.3, 103.8), session_epoch=7, name="Alice Tan")

        user = users.get_user("alice")
        assert user.name == "Alice Tan"
        assert user.location == Coordinates(1.3, 103.8)
        assert user.session_epoch == 7
        assert user.medical[0]["condition"] == "Asthma"
        assert users.get_session_epoch("alice") == 7

    def test_unknown_user(self, users):
        assert users.get_user("ghost") is None
        assert users.get_session_epoch("ghost") is None
        assert users.requester_snapshot("ghost") is None

    def test_update_location_last_write_wins(self, users, make_user):
        make_user("alice")
        assert users.update_location("alice", Coordinates(1.0, 2.0))
        assert users.update_location("alice", Coordinates(3.0, 4.0))

        user = users.get_user("alice")
        assert user.location == Coordinates(3.0, 4.0)
        assert user.location_updated_at is not None

    def test_update_location_unknown_user(self, users):
        assert users.update_location("ghost", Coordinates(1.0, 2.0)) is False

    def test_users_with_location_excludes(self, users, make_user):
        make_user("alice", location=Coordinates(1.3, 103.8))
        make_user("bob", location=Coordinates(1.4, 103.8))
        make_user("carol")

        ids = {u.id for u in users.users_with_location(exclude="alice")}
        assert ids == {"bob"}

    def test_requester_snapshot_shape(self, users, make_user):
        make_user("alice", phone_number="+6591234567")
        snapshot = users.requester_snapshot("alice")

        assert set(snapshot) == {"id", "name", "username", "phoneNumber", "medical", "skills"}
        assert snapshot["phoneNumber"] == "+6591234567"
