"""
Lifeline - Community Emergency Alerting

Realtime dispatch core that turns an SOS into a scoped broadcast to nearby
responders and keeps each user's emergency state consistent.
"""

__version__ = "1.0.0"
__author__ = "Lifeline Development Team"
