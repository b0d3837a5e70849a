"""
Location ingest

Keeps each user's last-known coordinate fresh. No history is kept; the most
recent write wins.
"""

import logging
from typing import Any, Dict

from lifeline.core.database import DatabaseError
from lifeline.models.emergency import Coordinates
from .errors import PersistenceError, ValidationError
from .user_directory import UserDirectory


class LocationIngest:

    def __init__(self, users: UserDirectory):
        self.logger = logging.getLogger(__name__)
        self.users = users

    def update(self, user_id: str, payload: Dict[str, Any]) -> Coordinates:
        """
        Validate and persist a location update

        Raises:
            ValidationError: coordinates missing or not finite numbers
            PersistenceError: the store rejected the write
        """
        coordinates = Coordinates.from_payload(payload)
        if coordinates is None:
            raise ValidationError("Invalid location payload")

        try:
            self.users.update_location(user_id, coordinates)
        except DatabaseError as e:
            self.logger.error(f"Failed to save location for {user_id}: {e}")
            raise PersistenceError("Failed to save location") from e

        self.logger.debug(f"Location for {user_id} set to "
                          f"{coordinates.latitude:.5f}, {coordinates.longitude:.5f}")
        return coordinates
