"""Column types and clocks shared by the settlement ledger models."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import String, TypeDecorator, Uuid
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeEngine


class UUIDType(TypeDecorator[uuid.UUID]):
    """UUID primary and foreign keys.

    Stored natively on PostgreSQL and as a 36-character string elsewhere,
    so the tests' in-memory SQLite and the deployed database share models.
    Values always come back as ``uuid.UUID``.
    """

    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Uuid(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        ledger_id = value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return ledger_id if dialect.name == "postgresql" else str(ledger_id)

    def process_result_value(self, value: Any, dialect: Dialect) -> uuid.UUID | None:
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_ms() -> int:
    """Milliseconds since the epoch, the unit payment history timestamps use."""
    return int(utc_now().timestamp() * 1000)
