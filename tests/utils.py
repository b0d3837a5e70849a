"""
Test utilities and helper functions for Lifeline testing.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

from jose import jwt

from lifeline.models.emergency import Coordinates

# Raiser position used across dispatch tests; responders are placed due north
ORIGIN = (1.30, 103.80)
METERS_PER_DEGREE_LAT = 111194.93

TEST_SECRET = "test-secret"


def north_of(meters: float) -> Coordinates:
    """Point ``meters`` due north of ORIGIN."""
    return Coordinates(ORIGIN[0] + meters / METERS_PER_DEGREE_LAT, ORIGIN[1])


def make_token(claims: Dict[str, Any], secret: str = TEST_SECRET, expires_in: int = 300) -> str:
    """Signed HS256 access token with an expiry ``expires_in`` seconds from now."""
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return jwt.encode(payload, secret, algorithm="HS256")


class AsyncTestHelper:
    """Helper class for async testing operations."""

    @staticmethod
    async def wait_for_condition(condition: Callable[[], bool], timeout: float = 1.0) -> bool:
        """Wait for a condition to become true."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while loop.time() - start_time < timeout:
            if condition():
                return True
            await asyncio.sleep(0.01)
        return condition()
