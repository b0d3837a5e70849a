"""
Dispatch Engine

Turns an SOS into a correctly scoped broadcast and keeps per-user emergency
state consistent.

Responsibilities:
- Raise: supersede the previous emergency, persist, arm expiry, look up AEDs,
  fan out to in-range subscribers, run AI triage and push in the background
- Cancel, auto-expiry and disconnect cleanup, each a compare-and-set followed
  by an ``emergency:cancelled`` broadcast
- Subscription resync so late subscribers learn about active emergencies
- Startup recovery of persisted active emergencies

All operations for one owner run under that owner's lock, so events against
the same emergency are totally ordered.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from lifeline.core.database import DatabaseError
from lifeline.core.geo import distance, is_finite_coordinate
from lifeline.core.logging import get_structured_logger
from lifeline.models.emergency import (
    AEDLocation, Coordinates, DeactivationReason, Emergency, RealtimeEvent,
    TriageAssessment, isoformat, utcnow
)
from lifeline.services.collaborators.aed_index import AEDIndex
from lifeline.services.collaborators.push import PushSender, emergency_push_payload
from lifeline.services.collaborators.triage import TriageService
from .emergency_store import EmergencyStore
from .errors import NotFoundError, PersistenceError, ValidationError
from .expiry_scheduler import ExpiryScheduler
from .subscriber_registry import SubscriberRegistry
from .user_directory import UserDirectory


@dataclass
class DispatchConfig:
    """Tunables for the dispatch engine"""
    emergency_ttl_seconds: float = 600
    fanout_radius_m: float = 500000
    aed_neighbours: int = 5
    aed_timeout_seconds: float = 2.5
    ai_timeout_seconds: float = 6.0
    ai_ack_grace_seconds: float = 1.0
    broadcast_on_expiry: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DispatchConfig':
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


class EventTransport(ABC):
    """Delivers server events to live connections"""

    @abstractmethod
    async def send_event(self, conn_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Send one event to one connection. Returns False if the connection is gone."""
        pass

    @abstractmethod
    def connections_for_user(self, user_id: str) -> Set[str]:
        pass


class DispatchEngine:
    """Owns the emergency lifecycle, the subscriber registry and expiry timers"""

    def __init__(
        self,
        store: EmergencyStore,
        users: UserDirectory,
        transport: EventTransport,
        aed_index: AEDIndex,
        triage: TriageService,
        push: PushSender,
        config: Optional[DispatchConfig] = None,
        registry: Optional[SubscriberRegistry] = None
    ):
        self.store = store
        self.users = users
        self.transport = transport
        self.aed_index = aed_index
        self.triage = triage
        self.push = push
        self.config = config or DispatchConfig()
        self.registry = registry or SubscriberRegistry()
        self.scheduler = ExpiryScheduler(self.expire_emergency)

        self.logger = logging.getLogger(__name__)
        self.audit = get_structured_logger("dispatch")

        self._owner_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._pending_fanout: Set[str] = set()
        self._fanout_connections: Dict[str, Set[str]] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        self._running = False

    # Lifecycle

    async def start(self) -> None:
        """Recover persisted active emergencies: expire overdue ones, re-arm the rest"""
        self._running = True
        now = utcnow()
        expired = 0
        rearmed = 0

        for emergency in self.store.list_active():
            if emergency.is_expired(now):
                if await self.expire_emergency(emergency.id, emergency.owner_id):
                    expired += 1
            else:
                self.scheduler.arm(emergency.id, emergency.owner_id, emergency.expires_at, now)
                rearmed += 1

        self.logger.info(f"Dispatch engine started ({rearmed} timers re-armed, {expired} expired)")

    async def stop(self) -> None:
        self._running = False

        for task in list(self._background_tasks):
            task.cancel()
        for task in list(self._background_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.warning(f"Background task failed during shutdown: {e}")
        self._background_tasks.clear()

        await self.scheduler.stop()
        self.registry.clear()
        self._fanout_connections.clear()
        self._pending_fanout.clear()

        await self.triage.close()
        await self.push.close()
        self.logger.info("Dispatch engine stopped")

    # Raise

    async def raise_emergency(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raise a new emergency for ``user_id``

        Args:
            user_id: Authenticated owner
            payload: ``{latitude, longitude, accuracy?, image?}``

        Returns:
            Acknowledgement ``{status, emergencyId, expiresAt, nearestAEDs, aiSummary?}``.
            ``aiSummary`` is present whenever triage ran; a placeholder stands in
            if it is still running when the grace period ends.

        Raises:
            ValidationError: coordinates are not finite numbers
            PersistenceError: the new record could not be saved
        """
        origin = Coordinates.from_payload(payload)
        if origin is None:
            raise ValidationError("Invalid coordinates")

        accuracy = payload.get('accuracy')
        if not is_finite_coordinate(accuracy):
            accuracy = None
        image = payload.get('image')
        if not isinstance(image, str) or not image:
            image = None

        user = self.users.get_user(user_id)
        requester = user.requester_snapshot() if user else None
        medical = user.medical if user else []

        async with self._owner_lock(user_id):
            await self._supersede_active(user_id)

            now = utcnow()
            emergency = Emergency(
                owner_id=user_id,
                origin=origin,
                created_at=now,
                expires_at=now + timedelta(seconds=self.config.emergency_ttl_seconds),
                accuracy=accuracy,
                image=image
            )

            self.store.create(emergency)
            # resync skips it until fan-out has run
            self._pending_fanout.add(emergency.id)
            self.scheduler.arm(emergency.id, user_id, emergency.expires_at, now)
            self._fanout_connections[emergency.id] = set()

            try:
                self.users.update_location(user_id, origin, now)
            except DatabaseError as e:
                self.logger.warning(f"Could not update location for {user_id} on raise: {e}")

        self.audit.info("emergency_raised", emergency_id=emergency.id, owner_id=user_id,
                        latitude=origin.latitude, longitude=origin.longitude,
                        has_image=image is not None)

        ai_task = None
        if image and self.triage.enabled:
            ai_task = self._spawn(self._run_triage(emergency, medical))

        fanned_users: List[str] = []
        try:
            aeds = await self._lookup_aeds(origin)

            async with self._owner_lock(user_id):
                current = self.store.get(emergency.id)
                if current is not None and current.is_active:
                    emergency.nearest_aeds = aeds
                    self.store.attach_aed_snapshot(emergency.id, aeds)
                    fanned_users = await self._fan_out(emergency, requester)
                else:
                    self.logger.info(f"Emergency {emergency.id} ended before fan-out, skipping")
        finally:
            self._pending_fanout.discard(emergency.id)

        if fanned_users:
            name = (requester or {}).get('name') or 'Someone'
            self._spawn(self._send_push(fanned_users, emergency_push_payload(name, emergency.id)))

        ack = {
            'status': 'ok',
            'emergencyId': emergency.id,
            'expiresAt': isoformat(emergency.expires_at),
            'nearestAEDs': [aed.to_dict() for aed in aeds]
        }

        if ai_task is not None:
            done, _ = await asyncio.wait({ai_task}, timeout=self.config.ai_ack_grace_seconds)
            if ai_task in done and not ai_task.cancelled() and ai_task.exception() is None:
                summary = ai_task.result()
            else:
                # the finished summary follows as emergency:updated
                summary = TriageAssessment.placeholder("AI triage pending")
            ack['aiSummary'] = summary.to_dict()

        return ack

    async def _supersede_active(self, user_id: str) -> None:
        for previous in self.store.list_active_for_owner(user_id):
            if self.store.deactivate_if_active(previous.id, DeactivationReason.SUPERSEDED, user_id):
                self.scheduler.cancel(previous.id)
                self.audit.info("emergency_superseded", emergency_id=previous.id, owner_id=user_id)
                await self._broadcast_cancelled(previous, DeactivationReason.SUPERSEDED)

    async def _lookup_aeds(self, origin: Coordinates) -> List[AEDLocation]:
        try:
            return await asyncio.wait_for(
                self.aed_index.find_nearest(origin.latitude, origin.longitude,
                                            self.config.aed_neighbours),
                timeout=self.config.aed_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.logger.warning("AED lookup timed out")
        except Exception as e:
            self.logger.warning(f"AED lookup failed: {e}")
        return []

    async def _fan_out(self, emergency: Emergency, requester: Optional[Dict[str, Any]]) -> List[str]:
        """Notify every subscribed connection of every in-range user; returns in-range user ids"""
        in_range = []
        notified = self._fanout_connections.setdefault(emergency.id, set())

        for responder in self.users.users_with_location(exclude=emergency.owner_id):
            meters = distance(emergency.origin, responder.location)
            # NaN compares false
            if not meters <= self.config.fanout_radius_m:
                continue
            in_range.append(responder.id)

            payload = emergency.nearby_payload(meters, requester)
            for conn_id in self.registry.members(responder.id):
                if conn_id in notified:
                    continue
                if await self._emit(conn_id, RealtimeEvent.NEARBY, payload):
                    notified.add(conn_id)

        self.audit.info("emergency_fanned_out", emergency_id=emergency.id,
                        users_in_range=len(in_range), connections=len(notified))
        return in_range

    async def _run_triage(self, emergency: Emergency, medical: List[Any]) -> TriageAssessment:
        try:
            summary = await asyncio.wait_for(
                self.triage.assess(emergency.image, medical),
                timeout=self.config.ai_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"AI triage timed out for {emergency.id}")
            summary = TriageAssessment.placeholder("AI triage timed out")
        except Exception as e:
            self.logger.error(f"AI triage failed for {emergency.id}: {e}")
            summary = TriageAssessment.placeholder(str(e) or type(e).__name__)

        emergency.ai_summary = summary
        self.store.attach_ai_summary(emergency.id, summary)

        recipients = set(self._fanout_connections.get(emergency.id, ()))
        recipients.update(self.transport.connections_for_user(emergency.owner_id))
        payload = {
            'emergencyId': emergency.id,
            'ownerId': emergency.owner_id,
            'aiSummary': summary.to_dict()
        }
        for conn_id in recipients:
            await self._emit(conn_id, RealtimeEvent.UPDATED, payload)

        return summary

    async def _send_push(self, user_ids: List[str], payload: Dict[str, Any]) -> None:
        try:
            results = await self.push.send_to_users(user_ids, payload)
        except Exception as e:
            self.logger.warning(f"Push notification failed: {e}")
            return
        failed = [r.user_id for r in results if not r.success]
        if failed:
            self.logger.warning(f"Push notification failed for {len(failed)} of {len(results)} users")

    # Cancel / expire / disconnect

    async def cancel_emergency(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Cancel one of the caller's active emergencies

        Raises:
            ValidationError: no emergencyId supplied
            NotFoundError: unknown, foreign or already inactive emergency
        """
        emergency_id = (payload or {}).get('emergencyId')
        if not emergency_id or not isinstance(emergency_id, str):
            raise ValidationError("emergencyId is required")

        async with self._owner_lock(user_id):
            if not self.store.deactivate_if_active(emergency_id, DeactivationReason.CANCELLED, user_id):
                raise NotFoundError("Emergency not found")

            self.scheduler.cancel(emergency_id)
            emergency = self.store.get(emergency_id)
            self.audit.info("emergency_cancelled", emergency_id=emergency_id, owner_id=user_id)
            await self._broadcast_cancelled(emergency)

        return {'status': 'ok'}

    async def expire_emergency(self, emergency_id: str, owner_id: str) -> bool:
        """Timer callback; a no-op unless the emergency is still active"""
        async with self._owner_lock(owner_id):
            try:
                if not self.store.deactivate_if_active(emergency_id, DeactivationReason.EXPIRED, owner_id):
                    return False
            except PersistenceError as e:
                self.logger.error(f"Could not expire emergency {emergency_id}: {e}")
                return False

            self.scheduler.cancel(emergency_id)
            self.audit.info("emergency_expired", emergency_id=emergency_id, owner_id=owner_id)

            if self.config.broadcast_on_expiry:
                emergency = self.store.get(emergency_id)
                await self._broadcast_cancelled(emergency, DeactivationReason.EXPIRED)
            else:
                self._fanout_connections.pop(emergency_id, None)
            return True

    async def handle_disconnect(self, user_id: str, conn_id: str, remaining_connections: int) -> int:
        """
        Connection closed

        The connection always leaves the registry. When it was the user's last
        connection, every active emergency the user owns is deactivated.

        Returns:
            Number of emergencies deactivated
        """
        self.registry.remove_connection(user_id, conn_id)
        for connections in self._fanout_connections.values():
            connections.discard(conn_id)

        if remaining_connections > 0:
            return 0

        deactivated = 0
        async with self._owner_lock(user_id):
            try:
                active = self.store.list_active_for_owner(user_id)
            except DatabaseError as e:
                self.logger.error(f"Disconnect cleanup for {user_id} failed: {e}")
                return 0

            for emergency in active:
                try:
                    flipped = self.store.deactivate_if_active(
                        emergency.id, DeactivationReason.DISCONNECTED, user_id)
                except PersistenceError as e:
                    self.logger.error(f"Could not deactivate {emergency.id} on disconnect: {e}")
                    continue
                if flipped:
                    deactivated += 1
                    self.scheduler.cancel(emergency.id)
                    self.audit.info("emergency_disconnected", emergency_id=emergency.id, owner_id=user_id)
                    await self._broadcast_cancelled(emergency, DeactivationReason.DISCONNECTED)

        return deactivated

    # Subscriptions

    async def subscribe(self, user_id: str, conn_id: str) -> bool:
        """
        Subscribe a connection to nearby emergencies

        A new subscription is resynced with every active, unexpired emergency of
        another user within range of the subscriber's last-known location.
        Emergencies whose fan-out has not run yet, or that this connection
        already received, are left to fan-out.

        Returns:
            False if the connection was already subscribed
        """
        if not self.registry.subscribe(user_id, conn_id):
            return False

        subscriber = self.users.get_user(user_id)
        if subscriber is None or not subscriber.has_location():
            return True

        resynced = 0
        for emergency in self.store.list_active(now=utcnow()):
            if emergency.owner_id == user_id or emergency.id in self._pending_fanout:
                continue
            if conn_id in self._fanout_connections.get(emergency.id, ()):
                continue
            meters = distance(emergency.origin, subscriber.location)
            if not meters <= self.config.fanout_radius_m:
                continue
            requester = self.users.requester_snapshot(emergency.owner_id)
            if await self._emit(conn_id, RealtimeEvent.NEARBY, emergency.nearby_payload(meters, requester)):
                self._fanout_connections.setdefault(emergency.id, set()).add(conn_id)
                resynced += 1

        if resynced:
            self.logger.debug(f"Resynced {resynced} emergencies to {user_id} on {conn_id}")
        return True

    def unsubscribe(self, user_id: str, conn_id: str) -> bool:
        return self.registry.unsubscribe(user_id, conn_id)

    # Helpers

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str):
        """Hold the owner's lock; it is forgotten once nobody holds or waits on it"""
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = self._owner_locks[owner_id] = asyncio.Lock()
        self._lock_holders[owner_id] = self._lock_holders.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[owner_id] -= 1
            if not self._lock_holders[owner_id]:
                del self._lock_holders[owner_id]
                del self._owner_locks[owner_id]

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _broadcast_cancelled(self, emergency: Optional[Emergency],
                                   reason: Optional[DeactivationReason] = None) -> None:
        if emergency is None:
            return
        self._fanout_connections.pop(emergency.id, None)
        payload = emergency.cancelled_payload(reason)
        for conn_id in self.registry.all_members():
            await self._emit(conn_id, RealtimeEvent.CANCELLED, payload)

    async def _emit(self, conn_id: str, event: str, payload: Dict[str, Any]) -> bool:
        try:
            return await self.transport.send_event(conn_id, event, payload)
        except Exception as e:
            self.logger.warning(f"Failed to send {event} to {conn_id}: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            'subscribers': len(self.registry),
            'armed_timers': len(self.scheduler),
            'background_tasks': len(self._background_tasks),
            'owner_locks': len(self._owner_locks),
            'running': self._running
        }
