"""Messaging core for the real-estate classifieds marketplace."""

__app_id__ = "marketplace-messaging"
__version__ = "0.1.0"
