"""
Push notifications

Delivers emergency alerts to users who are not currently watching the
realtime channel. The transport itself (web push, FCM) lives behind a relay;
this module only hands the relay a list of user ids and a payload.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp


@dataclass
class PushResult:
    """Delivery result for one user"""
    user_id: str
    success: bool
    error: Optional[str] = None


class PushSender(ABC):
    """Abstract push transport"""

    @abstractmethod
    async def send_to_users(self, user_ids: List[str], payload: Dict[str, Any]) -> List[PushResult]:
        pass

    async def close(self) -> None:
        pass


def emergency_push_payload(requester_name: str, emergency_id: str) -> Dict[str, Any]:
    """Notification body for a nearby emergency"""
    return {
        'title': 'Emergency nearby',
        'body': f"{requester_name} needs help nearby.",
        'data': {'emergencyId': emergency_id, 'type': 'emergency'}
    }


class LoggingPushSender(PushSender):
    """Used when no relay is configured; records the send and reports success"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def send_to_users(self, user_ids: List[str], payload: Dict[str, Any]) -> List[PushResult]:
        self.logger.info(f"Push (no relay) to {len(user_ids)} users: {payload.get('title')}")
        return [PushResult(user_id=user_id, success=True) for user_id in user_ids]


class WebhookPushSender(PushSender):
    """POSTs ``{userIds, payload}`` to a push relay"""

    def __init__(self, relay_url: str, api_key: Optional[str] = None, timeout_seconds: float = 10):
        self.relay_url = relay_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def send_to_users(self, user_ids: List[str], payload: Dict[str, Any]) -> List[PushResult]:
        if not user_ids:
            return []

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            await self._ensure_session()
            async with self.session.post(
                self.relay_url,
                headers=headers,
                json={'userIds': user_ids, 'payload': payload}
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    self.logger.warning(f"Push relay error {response.status}: {error_text}")
                    return [PushResult(user_id, False, f"HTTP {response.status}") for user_id in user_ids]
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Push relay request failed: {e}")
            return [PushResult(user_id, False, str(e)) for user_id in user_ids]

        return [PushResult(user_id, True) for user_id in user_ids]

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()


def create_push_sender(config: Dict[str, Any]) -> PushSender:
    relay_url = (config or {}).get('relay_url')
    if relay_url:
        return WebhookPushSender(
            relay_url,
            api_key=config.get('api_key'),
            timeout_seconds=config.get('timeout_seconds', 10)
        )
    return LoggingPushSender()
