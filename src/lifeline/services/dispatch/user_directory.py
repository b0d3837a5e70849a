"""
User directory for the dispatch core

Profiles are owned by the account service. Dispatch reads them for requester
snapshots and fan-out, and writes only the last-known location.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from lifeline.core.database import get_database, DatabaseManager
from lifeline.models.emergency import Coordinates, UserRecord, parse_datetime, utcnow


class UserDirectory:
    """Lookup and location bookkeeping for users"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        rows = self.db.execute_query("SELECT * FROM users WHERE id = ?", (user_id,))
        if rows:
            return self._row_to_user(rows[0])
        return None

    def upsert_user(self, user: UserRecord) -> UserRecord:
        """
        Insert or replace a user profile

        Used by the account service bridge and by tests to seed users.
        """
        location = user.location
        updated_at = user.location_updated_at
        self.db.execute_update(
            """INSERT INTO users
               (id, username, name, phone_number, medical, skills,
                location_lat, location_lon, location_updated_at, session_epoch, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   username = excluded.username,
                   name = excluded.name,
                   phone_number = excluded.phone_number,
                   medical = excluded.medical,
                   skills = excluded.skills,
                   location_lat = excluded.location_lat,
                   location_lon = excluded.location_lon,
                   location_updated_at = excluded.location_updated_at,
                   session_epoch = excluded.session_epoch,
                   updated_at = excluded.updated_at""",
            (
                user.id,
                user.username,
                user.name,
                user.phone_number,
                json.dumps(user.medical or []),
                json.dumps(user.skills or []),
                location.latitude if location else None,
                location.longitude if location else None,
                updated_at.isoformat() if updated_at else None,
                user.session_epoch,
                utcnow().isoformat()
            )
        )
        return user

    def update_location(self, user_id: str, coordinates: Coordinates,
                        when: Optional[datetime] = None) -> bool:
        """
        Overwrite the user's last-known coordinate (last write wins)

        Returns:
            True if the user exists and was updated

        Raises:
            DatabaseError: if the write fails
        """
        when = when or utcnow()
        rows_affected = self.db.execute_update(
            """UPDATE users
               SET location_lat = ?, location_lon = ?, location_updated_at = ?, updated_at = ?
               WHERE id = ?""",
            (coordinates.latitude, coordinates.longitude, when.isoformat(),
             when.isoformat(), user_id)
        )
        return rows_affected > 0

    def get_session_epoch(self, user_id: str) -> Optional[int]:
        rows = self.db.execute_query("SELECT session_epoch FROM users WHERE id = ?", (user_id,))
        if rows:
            return rows[0]['session_epoch']
        return None

    def users_with_location(self, exclude: Optional[str] = None) -> List[UserRecord]:
        """All users with a known coordinate, optionally leaving one out"""
        query = "SELECT * FROM users WHERE location_lat IS NOT NULL AND location_lon IS NOT NULL"
        params = ()
        if exclude is not None:
            query += " AND id != ?"
            params = (exclude,)
        return [self._row_to_user(row) for row in self.db.execute_query(query, params)]

    def requester_snapshot(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self.get_user(user_id)
        return user.requester_snapshot() if user else None

    def _row_to_user(self, row) -> UserRecord:
        location = None
        if row['location_lat'] is not None and row['location_lon'] is not None:
            location = Coordinates(row['location_lat'], row['location_lon'])

        return UserRecord(
            id=row['id'],
            username=row['username'],
            name=row['name'],
            phone_number=row['phone_number'],
            medical=json.loads(row['medical']) if row['medical'] else [],
            skills=json.loads(row['skills']) if row['skills'] else [],
            location=location,
            location_updated_at=parse_datetime(row['location_updated_at']),
            session_epoch=row['session_epoch']
        )
