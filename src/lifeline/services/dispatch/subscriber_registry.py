"""
Subscriber registry

In-memory map of user id to the connection ids that asked to receive nearby
emergency notifications. One instance per process; it is owned by the dispatch
engine and rebuilt by clients resubscribing after a restart.
"""

import logging
from typing import Dict, Set


class SubscriberRegistry:
    """Tracks emergency subscriptions per user and connection"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscriptions: Dict[str, Set[str]] = {}

    def subscribe(self, user_id: str, conn_id: str) -> bool:
        """Add a subscription. Returns False if the connection was already subscribed."""
        bucket = self._subscriptions.setdefault(user_id, set())
        if conn_id in bucket:
            return False
        bucket.add(conn_id)
        self.logger.debug(f"User {user_id} subscribed on connection {conn_id}")
        return True

    def unsubscribe(self, user_id: str, conn_id: str) -> bool:
        bucket = self._subscriptions.get(user_id)
        if not bucket or conn_id not in bucket:
            return False
        bucket.discard(conn_id)
        if not bucket:
            del self._subscriptions[user_id]
        self.logger.debug(f"User {user_id} unsubscribed connection {conn_id}")
        return True

    def remove_connection(self, user_id: str, conn_id: str) -> None:
        self.unsubscribe(user_id, conn_id)

    def is_subscribed(self, user_id: str, conn_id: str) -> bool:
        return conn_id in self._subscriptions.get(user_id, ())

    def members(self, user_id: str) -> Set[str]:
        return set(self._subscriptions.get(user_id, ()))

    def all_members(self) -> Set[str]:
        members = set()
        for bucket in self._subscriptions.values():
            members.update(bucket)
        return members

    def subscribed_users(self) -> Set[str]:
        return set(self._subscriptions)

    def clear(self) -> None:
        self._subscriptions.clear()

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._subscriptions.values())
