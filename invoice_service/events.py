"""
Invoice lifecycle events published by the store after a successful commit.

Events are plain immutable values so a consumer can run in-process (the
default) or receive them from a queue without changing the store contract.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from . import models
from .logging_config import get_logger

logger = get_logger("events")


@dataclass(frozen=True)
class InvoiceCreated:
    invoice_id: str
    invoice_number: str
    name: str = field(default="created", init=False)


@dataclass(frozen=True)
class InvoiceUpdated:
    invoice_id: str
    invoice_number: str
    changed_fields: FrozenSet[str]
    previous_pdf_path: Optional[str] = None
    name: str = field(default="updated", init=False)


@dataclass(frozen=True)
class InvoiceDeleted:
    invoice_id: str
    invoice_number: str
    pdf_path: Optional[str] = None
    name: str = field(default="deleted", init=False)


@dataclass(frozen=True)
class InvoicesMarkedOverdue:
    invoice_ids: Tuple[str, ...]
    name: str = field(default="marked_overdue", init=False)


InvoiceEvent = Union[InvoiceCreated, InvoiceUpdated, InvoiceDeleted, InvoicesMarkedOverdue]
EventHandler = Callable[[InvoiceEvent], Awaitable[None]]


def snapshot_invoice(invoice: models.Invoice) -> Dict[str, Any]:
    """Comparable view of an invoice; items are reduced to their content."""
    return {
        "invoice_number": invoice.invoice_number,
        "client_id": invoice.client_id,
        "description": invoice.description,
        "notes": invoice.notes,
        "issue_date": invoice.issue_date,
        "due_date": invoice.due_date,
        "total_amount": Decimal(str(invoice.total_amount)),
        "status": invoice.status,
        "attachment_path": invoice.attachment_path,
        "items": tuple(
            (item.name, int(item.quantity), Decimal(str(item.unit_price)), Decimal(str(item.tax_rate)))
            for item in invoice.items
        ),
    }


def diff_snapshots(before: Dict[str, Any], after: Dict[str, Any]) -> FrozenSet[str]:
    return frozenset(key for key in after if before.get(key) != after[key])


class InvoiceEventBus:
    """In-process fan-out of lifecycle events.

    Handlers are best effort: a failing handler is logged and never propagates
    into the mutation that published the event.
    """

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: InvoiceEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Event handler failed for invoice event {event.name}: {event}")


# Process-wide bus used by the API and CLI
event_bus = InvoiceEventBus()
