"""
Dispatch data models for Lifeline

Defines users, emergencies, collaborator results and the realtime event names
exchanged with clients.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from lifeline.core.geo import is_finite_coordinate


class EmergencyState(Enum):
    """Lifecycle state of an emergency"""
    NONE = "none"
    ACTIVE = "active"
    INACTIVE = "inactive"


class DeactivationReason(Enum):
    """Why an emergency left the ACTIVE state"""
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


class RealtimeEvent:
    """Event names on the realtime channel"""
    # client -> server
    LOCATION_UPDATE = "location:update"
    SUBSCRIBE = "emergency:subscribe"
    UNSUBSCRIBE = "emergency:unsubscribe"
    RAISE = "emergency:raise"
    CANCEL = "emergency:cancel"

    # server -> client
    ACK = "ack"
    CONNECT_ERROR = "connect_error"
    NEARBY = "emergency:nearby"
    CANCELLED = "emergency:cancelled"
    UPDATED = "emergency:updated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as UTC with a trailing Z, the way clients expect it"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Coordinates:
    """A validated latitude/longitude pair in degrees"""
    latitude: float
    longitude: float

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> Optional['Coordinates']:
        """Build coordinates from a client payload, or None when not finite numbers"""
        if not isinstance(payload, dict):
            return None
        latitude = payload.get('latitude')
        longitude = payload.get('longitude')
        if not (is_finite_coordinate(latitude) and is_finite_coordinate(longitude)):
            return None
        return cls(float(latitude), float(longitude))

    def to_dict(self) -> Dict[str, float]:
        return {'latitude': self.latitude, 'longitude': self.longitude}


@dataclass
class UserRecord:
    """User profile as seen by the dispatch core"""
    id: str
    username: str
    name: str
    phone_number: Optional[str] = None
    medical: List[Dict[str, Any]] = field(default_factory=list)
    skills: List[Dict[str, Any]] = field(default_factory=list)
    location: Optional[Coordinates] = None
    location_updated_at: Optional[datetime] = None
    session_epoch: Optional[int] = None

    def has_location(self) -> bool:
        return self.location is not None

    def requester_snapshot(self) -> Dict[str, Any]:
        """Public profile sent to responders alongside an emergency"""
        return {
            'id': self.id,
            'name': self.name,
            'username': self.username,
            'phoneNumber': self.phone_number,
            'medical': self.medical,
            'skills': self.skills
        }


@dataclass
class AEDLocation:
    """An automated external defibrillator returned by the AED index"""
    latitude: float
    longitude: float
    description: str = ""
    distance: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            'latitude': self.latitude,
            'longitude': self.longitude,
            'description': self.description
        })
        if self.distance is not None:
            data['distance'] = self.distance
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AEDLocation':
        known = {'latitude', 'longitude', 'description', 'distance'}
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            description=data.get('description') or "",
            distance=data.get('distance'),
            extra={k: v for k, v in data.items() if k not in known}
        )


@dataclass
class TriageAssessment:
    """AI triage summary attached to an emergency"""
    condition: str = "Unclear"
    severity: str = "Unknown"
    reasoning: str = "No details provided."
    action: str = "Proceed with standard protocol."
    location: str = "Unknown"
    fallback: bool = False
    error: Optional[str] = None

    @classmethod
    def placeholder(cls, reason: str) -> 'TriageAssessment':
        """Same-shape result used whenever the summarizer fails or times out"""
        return cls(
            condition="Error",
            severity="Unknown",
            reasoning="AI Service Unavailable.",
            action="Call emergency services.",
            location="Unknown",
            fallback=True,
            error=reason
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'condition': self.condition,
            'severity': self.severity,
            'reasoning': self.reasoning,
            'action': self.action,
            'location': self.location,
            'fallback': self.fallback
        }
        if self.error:
            data['error'] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TriageAssessment':
        return cls(
            condition=data.get('condition') or "Unclear",
            severity=data.get('severity') or "Unknown",
            reasoning=data.get('reasoning') or "No details provided.",
            action=data.get('action') or "Proceed with standard protocol.",
            location=data.get('location') or "Unknown",
            fallback=bool(data.get('fallback', False)),
            error=data.get('error')
        )


@dataclass
class Emergency:
    """One SOS episode owned by a user"""
    owner_id: str
    origin: Coordinates
    created_at: datetime
    expires_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    is_active: bool = True
    accuracy: Optional[float] = None
    image: Optional[str] = None
    ai_summary: Optional[TriageAssessment] = None
    nearest_aeds: List[AEDLocation] = field(default_factory=list)
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[DeactivationReason] = None

    @property
    def state(self) -> EmergencyState:
        return EmergencyState.ACTIVE if self.is_active else EmergencyState.INACTIVE

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def nearby_payload(self, distance_m: float, requester: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Body of an ``emergency:nearby`` event for one responder"""
        payload = {
            'emergencyId': self.id,
            'ownerId': self.owner_id,
            'latitude': self.origin.latitude,
            'longitude': self.origin.longitude,
            'expiresAt': isoformat(self.expires_at),
            'distance': distance_m,
            'nearestAEDs': [aed.to_dict() for aed in self.nearest_aeds],
            'requester': requester
        }
        if self.image:
            payload['image'] = self.image
        if self.ai_summary:
            payload['aiSummary'] = self.ai_summary.to_dict()
        return payload

    def cancelled_payload(self, reason: Optional[DeactivationReason] = None) -> Dict[str, Any]:
        """Body of an ``emergency:cancelled`` event"""
        payload = {'emergencyId': self.id, 'ownerId': self.owner_id}
        if reason is not None:
            payload['reason'] = reason.value
        return payload
