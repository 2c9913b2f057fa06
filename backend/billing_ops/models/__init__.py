from billing_ops.models.idempotency_record import IdempotencyRecord
from billing_ops.models.settlement_allocation import SettlementAllocation
from billing_ops.models.settlement_record import (
    SettlementRecord,
    SettlementRecordStatus,
    SettlementSourceType,
)

__all__ = [
    "IdempotencyRecord",
    "SettlementAllocation",
    "SettlementRecord",
    "SettlementRecordStatus",
    "SettlementSourceType",
]
