"""
Data models for Lifeline

Contains the data classes shared by the dispatch services.
"""

from .emergency import (
    Coordinates, UserRecord, Emergency, EmergencyState, DeactivationReason,
    AEDLocation, TriageAssessment, RealtimeEvent
)

__all__ = [
    'Coordinates', 'UserRecord', 'Emergency', 'EmergencyState', 'DeactivationReason',
    'AEDLocation', 'TriageAssessment', 'RealtimeEvent'
]
