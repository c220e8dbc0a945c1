from orderdesk.carrier.client import CarrierConfig, LabelFetchClient, build_label_client, get_carrier_config
from orderdesk.carrier.errors import (
    CarrierClientError,
    CarrierConfigurationError,
    CarrierError,
    CarrierFaultError,
    CarrierUnavailableError,
    UnrecognizedLabelResponse,
)

__all__ = [
    "CarrierConfig",
    "LabelFetchClient",
    "build_label_client",
    "get_carrier_config",
    "CarrierClientError",
    "CarrierConfigurationError",
    "CarrierError",
    "CarrierFaultError",
    "CarrierUnavailableError",
    "UnrecognizedLabelResponse",
]
