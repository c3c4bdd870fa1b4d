"""Adapters for the services the auction core consumes."""

from .identity import Identity, IdentityError, IdentityProvider, build_identity_provider
from .listings import ListingDirectory, build_listing_directory
from .notifications import NotificationDispatcher, NotificationSink, build_notification_sink

__all__ = [
    "Identity",
    "IdentityError",
    "IdentityProvider",
    "ListingDirectory",
    "NotificationDispatcher",
    "NotificationSink",
    "build_identity_provider",
    "build_listing_directory",
    "build_notification_sink",
]
