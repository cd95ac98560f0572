"""Sequential, human readable invoice numbers: ``INV-{year}{month}-{0001}``.

The sequence computed here is advisory. Uniqueness is guaranteed by the
``uq_invoices_invoice_number`` constraint; the store retries on collision.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .config import settings
from .database import utcnow


def month_prefix(now: datetime, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.INVOICE_NUMBER_PREFIX}-{now.year}{now.month:02d}-"


def format_invoice_number(now: datetime, sequence: int, prefix: Optional[str] = None) -> str:
    return f"{month_prefix(now, prefix)}{sequence:04d}"


def parse_sequence(invoice_number: str, month: str) -> Optional[int]:
    """Sequence part of a number issued for ``month``, None for foreign formats"""
    if not invoice_number.startswith(month):
        return None
    tail = invoice_number[len(month):]
    return int(tail) if tail.isdigit() else None


def next_sequence(existing_numbers: Iterable[str], month: str) -> int:
    sequences = [seq for seq in (parse_sequence(n, month) for n in existing_numbers) if seq is not None]
    return max(sequences, default=0) + 1


async def next_invoice_number(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """Generate next invoice number for the current calendar month"""
    now = now or utcnow()
    month = month_prefix(now)

    result = await db.execute(
        select(models.Invoice.invoice_number).where(models.Invoice.invoice_number.like(f"{month}%"))
    )
    return format_invoice_number(now, next_sequence(result.scalars().all(), month))
