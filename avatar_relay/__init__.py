"""Telegram avatar-video relay: dispatch, reconcile and deliver provider renders."""

__version__ = "0.3.0"
