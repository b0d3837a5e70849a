"""
Session binder

Authenticates a realtime connection at handshake time and binds it to exactly
one user. A token is accepted only if its signature and expiry verify and its
embedded session epoch matches the epoch recorded for the user, so a login on
a new device invalidates older sockets.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from jose import jwt, JWTError

from .errors import ConnectionAuthError
from .user_directory import UserDirectory


@dataclass
class SessionIdentity:
    """Who a connection belongs to"""
    user_id: str
    session_epoch: Any
    claims: Dict[str, Any] = field(default_factory=dict)


def extract_token(query_params: Mapping[str, str], headers: Mapping[str, str]) -> Optional[str]:
    """Bearer token from the ``token`` query parameter or the Authorization header"""
    token = query_params.get('token')
    if token:
        return token

    auth_header = headers.get('authorization') or headers.get('Authorization')
    if auth_header:
        parts = auth_header.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            return parts[1]
    return None


class SessionBinder:
    """Verifies access tokens and checks the device session epoch"""

    def __init__(self, users: UserDirectory, secret_key: str, algorithm: str = "HS256"):
        self.logger = logging.getLogger(__name__)
        self.users = users
        self.secret_key = secret_key
        self.algorithm = algorithm

    def bind(self, token: Optional[str]) -> SessionIdentity:
        """
        Resolve a token to a session identity

        Args:
            token: Raw JWT presented by the client

        Returns:
            SessionIdentity for the connection

        Raises:
            ConnectionAuthError: INVALID_TOKEN, UNKNOWN_USER or DEVICE_MISMATCH
        """
        if not token:
            raise ConnectionAuthError("Missing token", ConnectionAuthError.INVALID_TOKEN)

        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            self.logger.info(f"Rejected connection with invalid token: {e}")
            raise ConnectionAuthError("Invalid or expired token",
                                      ConnectionAuthError.INVALID_TOKEN) from e

        user_id = claims.get('sub') or claims.get('id')
        if not user_id:
            raise ConnectionAuthError("Invalid or expired token", ConnectionAuthError.INVALID_TOKEN)
        user_id = str(user_id)

        user = self.users.get_user(user_id)
        if user is None:
            self.logger.info(f"Rejected connection for unknown user {user_id}")
            raise ConnectionAuthError("Unknown user", ConnectionAuthError.UNKNOWN_USER)

        token_epoch = claims.get('sessionEpoch')
        if token_epoch is None or user.session_epoch is None or \
                str(token_epoch) != str(user.session_epoch):
            self.logger.info(f"Rejected connection for {user_id}: session epoch mismatch")
            raise ConnectionAuthError("Logged in on another device",
                                      ConnectionAuthError.DEVICE_MISMATCH)

        return SessionIdentity(user_id=user_id, session_epoch=token_epoch, claims=claims)
