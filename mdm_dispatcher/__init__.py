"""Asynchronous MDM command dispatcher for the Apple Push Notification service."""

from .version import __version__

__all__ = ["__version__"]
