"""
Emergency Dispatch Module

Provides the realtime dispatch core:
- SOS raise, cancel, auto-expiry and disconnect cleanup
- Geo fan-out to subscribed responders
- Session binding and location ingest
"""

from .dispatch_engine import DispatchEngine, DispatchConfig, EventTransport
from .emergency_store import EmergencyStore
from .errors import (
    DispatchError, ValidationError, NotFoundError, PersistenceError,
    CollaboratorFailure, ConnectionAuthError
)
from .expiry_scheduler import ExpiryScheduler
from .location_ingest import LocationIngest
from .session_binder import SessionBinder, SessionIdentity
from .subscriber_registry import SubscriberRegistry
from .user_directory import UserDirectory

__all__ = [
    'DispatchEngine',
    'DispatchConfig',
    'EventTransport',
    'EmergencyStore',
    'DispatchError',
    'ValidationError',
    'NotFoundError',
    'PersistenceError',
    'CollaboratorFailure',
    'ConnectionAuthError',
    'ExpiryScheduler',
    'LocationIngest',
    'SessionBinder',
    'SessionIdentity',
    'SubscriberRegistry',
    'UserDirectory'
]
