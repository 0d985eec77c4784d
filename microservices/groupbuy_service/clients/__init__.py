"""
Group-Buy Service Clients

HTTP clients for the services group-buy calls out to.
"""

from .notification_client import NotificationClient

__all__ = ["NotificationClient"]
