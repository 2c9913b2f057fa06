"""What happens to an invoice once a settlement has been applied to it.

The four cases are a table keyed by ``(status, fully_settled)`` so each
one can be looked up and tested on its own.
"""

from dataclasses import dataclass
from enum import Enum

from billing_ops.services.billing_provider import InvoiceStatus


class TransitionAction(str, Enum):
    """Provider-side action taken on a settled invoice."""

    DELETE = "delete"
    VOID = "void"
    ADJUST = "adjust"
    CREDIT_NOTE = "credit_note"
    MARK_SETTLED = "mark_settled"  # metadata only, invoice keeps its status


@dataclass(frozen=True)
class TransitionRule:
    action: TransitionAction
    fallback: TransitionAction | None = None


TRANSITIONS: dict[tuple[str, bool], TransitionRule] = {
    (InvoiceStatus.DRAFT.value, True): TransitionRule(
        TransitionAction.DELETE, fallback=TransitionAction.MARK_SETTLED
    ),
    (InvoiceStatus.DRAFT.value, False): TransitionRule(TransitionAction.ADJUST),
    (InvoiceStatus.OPEN.value, True): TransitionRule(
        TransitionAction.VOID, fallback=TransitionAction.CREDIT_NOTE
    ),
    (InvoiceStatus.OPEN.value, False): TransitionRule(TransitionAction.CREDIT_NOTE),
}


def transition_for(status: str, fully_settled: bool) -> TransitionRule:
    """Look up the rule for an invoice; only draft and open invoices have one."""
    try:
        return TRANSITIONS[(status, fully_settled)]
    except KeyError:
        raise ValueError(f"No settlement transition for invoice status '{status}'") from None
