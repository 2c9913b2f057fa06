from billing_ops.repositories.idempotency_repository import IdempotencyRepository
from billing_ops.repositories.settlement_allocation_repository import (
    SettlementAllocationRepository,
)
from billing_ops.repositories.settlement_record_repository import SettlementRecordRepository

__all__ = [
    "IdempotencyRepository",
    "SettlementAllocationRepository",
    "SettlementRecordRepository",
]
