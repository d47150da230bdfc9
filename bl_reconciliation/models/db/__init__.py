from .store_configs import StoreConfigRecord
from .deliveries import Delivery
from .reconciliation_runs import ReconciliationRunRecord
from .enums import DeliveryStatus, MatchType, RunStatus, RunTrigger, ReconciliationOutcome

__all__ = [
    "StoreConfigRecord",
    "Delivery",
    "ReconciliationRunRecord",
    "DeliveryStatus",
    "MatchType",
    "RunStatus",
    "RunTrigger",
    "ReconciliationOutcome",
]
