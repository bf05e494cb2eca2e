"""
Audit Services

System log, security events and fire-and-forget operator notifications.
"""

from .system_log import SystemLogService, NotificationSink, audited_action

__all__ = [
    'SystemLogService',
    'NotificationSink',
    'audited_action',
]
