"""Notification channels and message formatting."""

from .formatters import build_critical_alert, build_summary_body, build_summary_message, build_summary_title
from .notifier import Notifier

__all__ = [
    'Notifier',
    'build_critical_alert',
    'build_summary_body',
    'build_summary_message',
    'build_summary_title',
]
