"""
Invoice status rules.

Any explicit change between the three states is allowed (manual correction
must stay possible); the only automatic transition is pending -> overdue,
applied in bulk by the overdue sweep.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .database import utcnow
from .errors import InvoiceValidationError
from .events import InvoiceEventBus, InvoicesMarkedOverdue
from .logging_config import get_logger
from .schemas import InvoiceStatus

logger = get_logger("status")


def coerce_status(value: Any) -> InvoiceStatus:
    try:
        return InvoiceStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in InvoiceStatus)
        raise InvoiceValidationError(f"Invalid status '{value}'. Valid values: {valid}")


def validate_transition(current: Any, target: Any) -> InvoiceStatus:
    """Return the target status if the move is permitted"""
    coerce_status(current)
    return coerce_status(target)


def is_overdue(status: Any, due_date: datetime, now: Optional[datetime] = None) -> bool:
    """Still pending and strictly past due.

    The sweep applies the same rule in SQL; this form flags invoices that
    are past due but not yet swept.
    """
    now = now or utcnow()
    return coerce_status(status) == InvoiceStatus.PENDING and due_date < now


async def run_overdue_sweep(
    db: AsyncSession,
    now: Optional[datetime] = None,
    bus: Optional[InvoiceEventBus] = None,
) -> List[str]:
    """Flip eligible pending invoices to overdue and announce them as one batch"""
    from . import crud

    now = now or utcnow()
    invoice_ids = await crud.mark_overdue_invoices(db, now=now)

    logger.info(f"Overdue sweep at {now.isoformat()} updated {len(invoice_ids)} invoice(s)")

    if invoice_ids and bus is not None:
        await bus.publish(InvoicesMarkedOverdue(invoice_ids=tuple(invoice_ids)))
    return invoice_ids
