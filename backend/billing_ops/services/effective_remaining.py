"""Locally tracked payment ledger stored in invoice metadata.

Draft invoices have no provider-native notion of a partial payment, so
every amount applied to an invoice is appended to a JSON ``paymentHistory``
list in its metadata and ``totalPaid`` caches the sum of that list.

Each entry records the ``action`` that carried it out. An ``adjust`` entry
has already lowered the draft's ``amount_due`` through a negative line
item; every other entry has not. The amount still due on a draft is
therefore the provider's ``amount_due`` minus the non-adjusting entries,
which stays correct even when an annotation write was lost.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from billing_ops.services.billing_provider import InvoiceRecord, InvoiceStatus

logger = logging.getLogger(__name__)

PAYMENT_HISTORY_KEY = "paymentHistory"
TOTAL_PAID_KEY = "totalPaid"
ORIGINAL_AMOUNT_KEY = "originalAmount"
METADATA_VERSION_KEY = "metadataVersion"
LAST_PAYMENT_SOURCE_KEY = "lastPaymentSourceId"
LAST_PAYMENT_REASON_KEY = "lastPaymentReason"
LAST_PAYMENT_AMOUNT_KEY = "lastPaymentAmount"
LAST_PAYMENT_DATE_KEY = "lastPaymentDate"
SETTLED_FLAG_KEY = "paidViaManualSettlement"

SETTLEMENT_KIND = "settlement"
CARRIED_FORWARD_KIND = "carried_forward"
ADJUST_ACTION = "adjust"

# Stripe rejects metadata values longer than this.
MAX_METADATA_VALUE_LENGTH = 500
MAX_REASON_LENGTH = 120


@dataclass
class PaymentHistoryEntry:
    """One amount applied to an invoice by a settlement source."""

    sourceId: str
    amount: int
    reason: str
    timestamp: int
    kind: str = SETTLEMENT_KIND
    action: str | None = None


def _parse_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def fit_metadata_value(value: str) -> str:
    return value[:MAX_METADATA_VALUE_LENGTH]


def parse_payment_history(metadata: dict[str, str]) -> list[dict[str, Any]]:
    """Return the history list from metadata; malformed history reads as empty.

    Entries are kept as plain dicts so entries written by older code paths
    (with different keys) survive a rewrite untouched.
    """
    raw = metadata.get(PAYMENT_HISTORY_KEY)
    if not raw:
        return []
    try:
        history = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed paymentHistory: %r", raw[:80])
        return []
    if not isinstance(history, list):
        return []
    return [entry for entry in history if isinstance(entry, dict)]


def reduces_amount_due(entry: dict[str, Any]) -> bool:
    return entry.get("action") == ADJUST_ACTION


def sum_history(history: list[dict[str, Any]]) -> int:
    """Total of every entry's amount. History is authoritative over ``totalPaid``."""
    return sum(_parse_int(entry.get("amount")) for entry in history)


def unadjusted_total(history: list[dict[str, Any]]) -> int:
    """Sum of the entries that did not lower the provider's ``amount_due``.

    Entries without an ``action`` (older writers) count here, so they can
    only shrink the amount still due, never inflate it.
    """
    return sum(_parse_int(e.get("amount")) for e in history if not reduces_amount_due(e))


def append_entry(
    history: list[dict[str, Any]], entry: PaymentHistoryEntry
) -> list[dict[str, Any]]:
    return [*history, asdict(entry)]


def serialize_history(history: list[dict[str, Any]]) -> str:
    return json.dumps(history, separators=(",", ":"))


def _carry_forward(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    adjusted = sum_history([e for e in entries if reduces_amount_due(e)])
    other = unadjusted_total(entries)
    folded: list[dict[str, Any]] = []
    if adjusted:
        folded.append(
            {
                "sourceId": CARRIED_FORWARD_KIND,
                "amount": adjusted,
                "kind": CARRIED_FORWARD_KIND,
                "action": ADJUST_ACTION,
            }
        )
    if other:
        folded.append(
            {"sourceId": CARRIED_FORWARD_KIND, "amount": other, "kind": CARRIED_FORWARD_KIND}
        )
    return folded


def compact_history(
    history: list[dict[str, Any]], limit: int = MAX_METADATA_VALUE_LENGTH
) -> list[dict[str, Any]]:
    """Fold the oldest entries into carried-forward totals until the JSON fits ``limit``.

    The sum of the history and the adjusted/unadjusted split are preserved,
    so ``totalPaid`` and the draft remaining amount do not change.
    """
    if len(serialize_history(history)) <= limit:
        return history
    for keep in range(len(history) - 1, 0, -1):
        split = len(history) - keep
        compacted = _carry_forward(history[:split]) + history[split:]
        if len(serialize_history(compacted)) <= limit:
            return compacted
    return _carry_forward(history)


def metadata_version(metadata: dict[str, str]) -> int:
    return _parse_int(metadata.get(METADATA_VERSION_KEY))


def effective_remaining(invoice: InvoiceRecord) -> int:
    """How much of ``invoice`` is still uncollected.

    - draft: ``amount_due`` minus the applied amounts not already taken
      off it by an adjustment, floored at zero
    - open: the provider's ``amount_remaining``
    - anything else: zero
    """
    if invoice.status == InvoiceStatus.DRAFT.value:
        history = parse_payment_history(invoice.metadata)
        return max(0, invoice.amount_due - unadjusted_total(history))
    if invoice.status == InvoiceStatus.OPEN.value:
        return max(0, invoice.amount_remaining)
    return 0
