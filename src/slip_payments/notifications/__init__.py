"""Outcome notifications: rendering, transports and the dispatcher."""

from .channel import MessagingChannel, LineMessagingChannel, LoggingChannel, SendReceipt
from .dispatcher import NotificationDispatcher, DispatchSummary
from .messages import render_payload, render_daily_summary, render_monthly_summary, format_amount

__all__ = [
    "MessagingChannel",
    "LineMessagingChannel",
    "LoggingChannel",
    "SendReceipt",
    "NotificationDispatcher",
    "DispatchSummary",
    "render_payload",
    "render_daily_summary",
    "render_monthly_summary",
    "format_amount",
]
