from orderdesk.labels.aggregator import LabelAggregator, LabelBundle, NoLabelsProducedError, ShipmentFailure
from orderdesk.labels.delivery import LabelDelivery, LabelDeliveryService
from orderdesk.labels.storage import LabelStore, LocalLabelStore, MinioLabelStore, build_label_store

__all__ = [
    "LabelAggregator",
    "LabelBundle",
    "NoLabelsProducedError",
    "ShipmentFailure",
    "LabelDelivery",
    "LabelDeliveryService",
    "LabelStore",
    "LocalLabelStore",
    "MinioLabelStore",
    "build_label_store",
]
