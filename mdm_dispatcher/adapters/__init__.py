"""Adapter modules for external integrations."""

from .apns import ApnsGatewayClient, ProviderTokenSigner
from .devices import (
    DeviceToolError,
    RestoreMode,
    RestoreReport,
    RestoreRunner,
    list_devices,
)

__all__ = [
    "ApnsGatewayClient",
    "DeviceToolError",
    "ProviderTokenSigner",
    "RestoreMode",
    "RestoreReport",
    "RestoreRunner",
    "list_devices",
]
