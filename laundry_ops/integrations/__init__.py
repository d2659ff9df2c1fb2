"""External integrations: the Tap gateway client and the notification sender."""
from .notifier import NotificationError, Notifier
from .tap_client import GatewayError, TapClient, TapCustomer

__all__ = ["GatewayError", "NotificationError", "Notifier", "TapClient", "TapCustomer"]
