"""OpenPhone (Quo) public API client."""

from commsync.openphone.client import (
    OPENPHONE_API_BASE_URL,
    OpenPhoneClient,
    OpenPhoneError,
    OpenPhoneRequestError,
    OpenPhoneTransportError,
    ProviderPage,
    TelephonyProvider,
)

__all__ = [
    "OPENPHONE_API_BASE_URL",
    "OpenPhoneClient",
    "OpenPhoneError",
    "OpenPhoneRequestError",
    "OpenPhoneTransportError",
    "ProviderPage",
    "TelephonyProvider",
]
