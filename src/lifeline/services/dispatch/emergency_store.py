"""
Emergency Store

Durable per-user list of emergency records:
- Creation of active emergencies with a fixed expiry
- Compare-and-set deactivation so expiry, cancel and disconnect cannot
  double-apply
- Attaching the AED snapshot and AI summary after the fact

Inactive records are kept; nothing here deletes an emergency.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

from lifeline.core.database import get_database, DatabaseError, DatabaseManager
from lifeline.models.emergency import (
    AEDLocation, Coordinates, DeactivationReason, Emergency, TriageAssessment,
    parse_datetime, utcnow
)
from .errors import PersistenceError


class EmergencyStore:
    """Reads and writes emergency records"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    def create(self, emergency: Emergency) -> Emergency:
        """
        Persist a new emergency

        Args:
            emergency: The emergency to insert, normally active

        Returns:
            The same emergency once the write is confirmed

        Raises:
            PersistenceError: if the insert fails (including a second active
                emergency for the same owner)
        """
        try:
            self.db.execute_update(
                """INSERT INTO emergencies
                   (id, owner_id, is_active, created_at, expires_at, latitude, longitude,
                    accuracy, image, ai_summary, nearest_aeds)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    emergency.id,
                    emergency.owner_id,
                    1 if emergency.is_active else 0,
                    emergency.created_at.isoformat(),
                    emergency.expires_at.isoformat(),
                    emergency.origin.latitude,
                    emergency.origin.longitude,
                    emergency.accuracy,
                    emergency.image,
                    json.dumps(emergency.ai_summary.to_dict()) if emergency.ai_summary else None,
                    json.dumps([aed.to_dict() for aed in emergency.nearest_aeds])
                )
            )
        except DatabaseError as e:
            self.logger.error(f"Failed to persist emergency for {emergency.owner_id}: {e}")
            raise PersistenceError("Failed to save emergency") from e

        self.logger.info(f"Created emergency {emergency.id} for user {emergency.owner_id}")
        return emergency

    def get(self, emergency_id: str) -> Optional[Emergency]:
        """Get an emergency by ID, or None if unknown"""
        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE id = ?",
            (emergency_id,)
        )
        if rows:
            return self._row_to_emergency(rows[0])
        return None

    def list_for_owner(self, owner_id: str) -> List[Emergency]:
        """All emergencies of one user, newest first"""
        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE owner_id = ? ORDER BY created_at DESC",
            (owner_id,)
        )
        return [self._row_to_emergency(row) for row in rows]

    def list_active_for_owner(self, owner_id: str) -> List[Emergency]:
        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE owner_id = ? AND is_active = 1",
            (owner_id,)
        )
        return [self._row_to_emergency(row) for row in rows]

    def list_active(self, now: Optional[datetime] = None) -> List[Emergency]:
        """
        Active emergencies, optionally restricted to those not yet expired

        Args:
            now: When given, emergencies whose expiry has passed are left out
        """
        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE is_active = 1 ORDER BY created_at"
        )
        emergencies = [self._row_to_emergency(row) for row in rows]
        if now is None:
            return emergencies
        return [e for e in emergencies if not e.is_expired(now)]

    def deactivate_if_active(
        self,
        emergency_id: str,
        reason: DeactivationReason,
        owner_id: Optional[str] = None
    ) -> bool:
        """
        Flip an emergency to inactive only if it is still active

        Args:
            emergency_id: Emergency to deactivate
            reason: Recorded deactivation reason
            owner_id: When given, the emergency must belong to this user

        Returns:
            True if this call performed the transition, False if the emergency
            was unknown, foreign or already inactive

        Raises:
            PersistenceError: if the update could not be written
        """
        query = """UPDATE emergencies
                   SET is_active = 0, deactivated_at = ?, deactivation_reason = ?
                   WHERE id = ? AND is_active = 1"""
        params = [utcnow().isoformat(), reason.value, emergency_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        try:
            rows_affected = self.db.execute_update(query, tuple(params))
        except DatabaseError as e:
            self.logger.error(f"Failed to deactivate emergency {emergency_id}: {e}")
            raise PersistenceError("Failed to update emergency") from e

        if rows_affected > 0:
            self.logger.info(f"Emergency {emergency_id} deactivated ({reason.value})")
            return True
        return False

    def attach_ai_summary(self, emergency_id: str, summary: TriageAssessment) -> bool:
        try:
            rows_affected = self.db.execute_update(
                "UPDATE emergencies SET ai_summary = ? WHERE id = ?",
                (json.dumps(summary.to_dict()), emergency_id)
            )
        except DatabaseError as e:
            self.logger.error(f"Failed to store AI summary for {emergency_id}: {e}")
            return False
        return rows_affected > 0

    def attach_aed_snapshot(self, emergency_id: str, aeds: List[AEDLocation]) -> bool:
        try:
            rows_affected = self.db.execute_update(
                "UPDATE emergencies SET nearest_aeds = ? WHERE id = ?",
                (json.dumps([aed.to_dict() for aed in aeds]), emergency_id)
            )
        except DatabaseError as e:
            self.logger.error(f"Failed to store AED snapshot for {emergency_id}: {e}")
            return False
        return rows_affected > 0

    def _row_to_emergency(self, row) -> Emergency:
        """Convert database row to Emergency object"""
        ai_summary = None
        if row['ai_summary']:
            ai_summary = TriageAssessment.from_dict(json.loads(row['ai_summary']))

        nearest_aeds = []
        if row['nearest_aeds']:
            nearest_aeds = [AEDLocation.from_dict(item) for item in json.loads(row['nearest_aeds'])]

        reason = None
        if row['deactivation_reason']:
            reason = DeactivationReason(row['deactivation_reason'])

        return Emergency(
            id=row['id'],
            owner_id=row['owner_id'],
            origin=Coordinates(row['latitude'], row['longitude']),
            created_at=parse_datetime(row['created_at']),
            expires_at=parse_datetime(row['expires_at']),
            is_active=bool(row['is_active']),
            accuracy=row['accuracy'],
            image=row['image'],
            ai_summary=ai_summary,
            nearest_aeds=nearest_aeds,
            deactivated_at=parse_datetime(row['deactivated_at']),
            deactivation_reason=reason
        )
