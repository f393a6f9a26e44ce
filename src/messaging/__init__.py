"""Direct-message provider integration."""
from .provider import MessagingProvider, ProviderMessage
from .dm_client import DMClient, get_dm_client, reset_dm_client

__all__ = [
    "MessagingProvider",
    "ProviderMessage",
    "DMClient",
    "get_dm_client",
    "reset_dm_client",
]
