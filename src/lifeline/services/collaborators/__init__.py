"""
External collaborators of the dispatch core: AED index, AI triage and push.
"""

from .aed_index import AEDIndex, StaticAEDIndex
from .push import PushSender, PushResult, LoggingPushSender, WebhookPushSender, create_push_sender
from .triage import TriageService, TriageConfig, GroqTriageService

__all__ = [
    'AEDIndex', 'StaticAEDIndex',
    'PushSender', 'PushResult', 'LoggingPushSender', 'WebhookPushSender', 'create_push_sender',
    'TriageService', 'TriageConfig', 'GroqTriageService'
]
