from typing import List, Optional, Tuple
from datetime import datetime
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_, func, asc, desc, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from . import models, schemas
from .config import settings
from .database import utcnow
from .errors import ConflictError, InvoiceValidationError, PersistenceError
from .events import (
    InvoiceCreated, InvoiceDeleted, InvoiceEventBus, InvoiceUpdated, diff_snapshots, snapshot_invoice,
)
from .invoice_calculator import InvoiceCalculator
from .invoice_numbering import next_invoice_number
from .logging_config import get_logger
from .status import validate_transition

logger = get_logger("crud")

SORTABLE_COLUMNS = {
    "created_at": models.Invoice.created_at,
    "updated_at": models.Invoice.updated_at,
    "issue_date": models.Invoice.issue_date,
    "due_date": models.Invoice.due_date,
    "total_amount": models.Invoice.total_amount,
    "invoice_number": models.Invoice.invoice_number,
    "status": models.Invoice.status,
}


def _is_invoice_number_violation(exc: IntegrityError) -> bool:
    return "invoice_number" in str(exc.orig)


async def _rollback_and_translate(db: AsyncSession, exc: SQLAlchemyError, action: str) -> Exception:
    await db.rollback()
    if isinstance(exc, IntegrityError):
        logger.warning(f"Unique constraint violated while trying to {action}: {exc.orig}")
        if _is_invoice_number_violation(exc):
            return ConflictError("Invoice number already exists", {"field": "invoice_number"})
        return ConflictError("Data already exists - duplicate entry detected")
    logger.error(f"Database error while trying to {action}: {exc}")
    return PersistenceError(f"Failed to {action}")


def _build_items(item_data: List[schemas.InvoiceItemCreate], calculator: InvoiceCalculator) -> Tuple[List[models.InvoiceItem], Decimal]:
    totals = calculator.calculate_totals(item_data)
    items = [
        models.InvoiceItem(
            position=position,
            name=data.name,
            quantity=data.quantity,
            unit_price=data.unit_price,
            tax_rate=amounts.tax_rate,
            tax_amount=amounts.tax_amount,
            total_amount=amounts.total_amount,
        )
        for position, (data, amounts) in enumerate(zip(item_data, totals.items))
    ]
    return items, totals.total_amount


# === LOOKUPS ===

async def get_user(db: AsyncSession, user_id: str) -> Optional[models.User]:
    return await db.get(models.User, user_id)


async def get_client(db: AsyncSession, client_id: str) -> Optional[models.Client]:
    return await db.get(models.Client, client_id)


async def create_client(db: AsyncSession, client_data: schemas.ClientCreate) -> models.Client:
    """Create client; email and document identifier are globally unique"""
    client = models.Client(**client_data.model_dump())
    db.add(client)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "create client") from exc
    await db.refresh(client)
    return client


async def _invoice_number_taken(db: AsyncSession, invoice_number: str, exclude_id: Optional[str] = None) -> bool:
    query = select(models.Invoice.id).where(models.Invoice.invoice_number == invoice_number)
    if exclude_id:
        query = query.where(models.Invoice.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none() is not None


# === INVOICE CRUD OPERATIONS ===

async def get_invoice(db: AsyncSession, invoice_id: str) -> Optional[models.Invoice]:
    """Get invoice with client, user and items loaded"""
    try:
        result = await db.execute(
            select(models.Invoice)
            .options(
                selectinload(models.Invoice.client),
                selectinload(models.Invoice.user),
                selectinload(models.Invoice.items),
            )
            .where(models.Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "load invoice") from exc


async def create_invoice(
    db: AsyncSession,
    user_id: str,
    invoice_data: schemas.InvoiceCreate,
    bus: Optional[InvoiceEventBus] = None,
    calculator: Optional[InvoiceCalculator] = None,
) -> models.Invoice:
    """Create invoice with its line items as one unit"""
    calculator = calculator or InvoiceCalculator()

    if invoice_data.due_date < invoice_data.issue_date:
        raise InvoiceValidationError("Due date must be on or after issue date")
    if not await get_user(db, user_id):
        raise InvoiceValidationError("Issuing user does not exist", {"user_id": user_id})
    if not await get_client(db, invoice_data.client_id):
        raise InvoiceValidationError("Selected client does not exist", {"client_id": invoice_data.client_id})

    explicit_number = invoice_data.invoice_number
    if explicit_number and await _invoice_number_taken(db, explicit_number):
        raise ConflictError("Invoice number already exists", {"invoice_number": explicit_number})

    # Validate items before touching the sequence
    calculator.calculate_totals(invoice_data.items)

    attempts = 1 if explicit_number else max(1, settings.INVOICE_NUMBER_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        invoice_number = explicit_number or await next_invoice_number(db)
        items, total_amount = _build_items(invoice_data.items, calculator)

        db_invoice = models.Invoice(
            invoice_number=invoice_number,
            client_id=invoice_data.client_id,
            user_id=user_id,
            description=invoice_data.description,
            notes=invoice_data.notes,
            issue_date=invoice_data.issue_date,
            due_date=invoice_data.due_date,
            status=invoice_data.status.value,
            attachment_path=invoice_data.attachment_path,
            total_amount=total_amount,
            items=items,
        )
        db.add(db_invoice)

        try:
            await db.commit()
            break
        except IntegrityError as exc:
            await db.rollback()
            if explicit_number or not _is_invoice_number_violation(exc):
                raise await _rollback_and_translate(db, exc, "create invoice") from exc
            logger.warning(f"Generated invoice number {invoice_number} collided (attempt {attempt}/{attempts})")
            if attempt == attempts:
                raise ConflictError(
                    "Could not allocate a unique invoice number, please retry",
                    {"invoice_number": invoice_number},
                ) from exc
        except SQLAlchemyError as exc:
            raise await _rollback_and_translate(db, exc, "create invoice") from exc

    logger.info(
        f"Invoice created: id={db_invoice.id} number={db_invoice.invoice_number} "
        f"client_id={db_invoice.client_id} total_amount={db_invoice.total_amount}"
    )

    invoice = await get_invoice(db, db_invoice.id)
    if bus is not None:
        await bus.publish(InvoiceCreated(invoice_id=invoice.id, invoice_number=invoice.invoice_number))
    return invoice


async def update_invoice(
    db: AsyncSession,
    invoice_id: str,
    invoice_update: schemas.InvoiceUpdate,
    bus: Optional[InvoiceEventBus] = None,
    calculator: Optional[InvoiceCalculator] = None,
) -> Optional[models.Invoice]:
    """Partial update; supplied items replace all existing items"""
    invoice = await get_invoice(db, invoice_id)
    if not invoice:
        return None

    calculator = calculator or InvoiceCalculator()
    before = snapshot_invoice(invoice)
    previous_pdf_path = invoice.generated_pdf_path

    update_data = invoice_update.model_dump(exclude_unset=True, exclude={"items"})
    for required in ("invoice_number", "client_id", "issue_date", "due_date", "status"):
        if required in update_data and update_data[required] is None:
            raise InvoiceValidationError(f"{required.replace('_', ' ').capitalize()} cannot be empty")

    new_number = update_data.get("invoice_number")
    if new_number and new_number != invoice.invoice_number and await _invoice_number_taken(db, new_number, invoice.id):
        raise ConflictError("Invoice number already exists", {"invoice_number": new_number})

    new_client = update_data.get("client_id")
    if new_client and new_client != invoice.client_id and not await get_client(db, new_client):
        raise InvoiceValidationError("Selected client does not exist", {"client_id": new_client})

    issue_date = update_data.get("issue_date", invoice.issue_date)
    due_date = update_data.get("due_date", invoice.due_date)
    if due_date < issue_date:
        raise InvoiceValidationError("Due date must be on or after issue date")

    if "status" in update_data:
        update_data["status"] = validate_transition(invoice.status, update_data["status"]).value

    new_items = None
    if invoice_update.items is not None:
        new_items, total_amount = _build_items(invoice_update.items, calculator)

    for field, value in update_data.items():
        setattr(invoice, field, value)
    if new_items is not None:
        invoice.items = new_items
        invoice.total_amount = total_amount

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "update invoice") from exc

    invoice = await get_invoice(db, invoice_id)
    changed = diff_snapshots(before, snapshot_invoice(invoice))

    logger.info(f"Invoice updated: id={invoice_id} changed_fields={sorted(changed)}")

    if bus is not None and changed:
        await bus.publish(
            InvoiceUpdated(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                changed_fields=changed,
                previous_pdf_path=previous_pdf_path,
            )
        )
    return invoice


async def delete_invoice(db: AsyncSession, invoice_id: str, bus: Optional[InvoiceEventBus] = None) -> bool:
    """Delete invoice and its items"""
    invoice = await get_invoice(db, invoice_id)
    if not invoice:
        return False

    invoice_number = invoice.invoice_number
    pdf_path = invoice.generated_pdf_path

    try:
        await db.delete(invoice)
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "delete invoice") from exc

    logger.info(f"Invoice deleted: id={invoice_id} number={invoice_number}")

    if bus is not None:
        await bus.publish(InvoiceDeleted(invoice_id=invoice_id, invoice_number=invoice_number, pdf_path=pdf_path))
    return True


async def update_invoice_status(
    db: AsyncSession,
    invoice_id: str,
    status: schemas.InvoiceStatus,
    bus: Optional[InvoiceEventBus] = None,
) -> bool:
    """Validate and apply an explicit status change"""
    invoice = await get_invoice(db, invoice_id)
    if not invoice:
        return False

    target = validate_transition(invoice.status, status)
    old_status = invoice.status
    if old_status == target.value:
        return True

    previous_pdf_path = invoice.generated_pdf_path
    invoice.status = target.value
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "update invoice status") from exc

    logger.info(f"Invoice status updated: id={invoice_id} old_status={old_status} new_status={target.value}")

    if bus is not None:
        await bus.publish(
            InvoiceUpdated(
                invoice_id=invoice_id,
                invoice_number=invoice.invoice_number,
                changed_fields=frozenset({"status"}),
                previous_pdf_path=previous_pdf_path,
            )
        )
    return True


async def set_invoice_pdf_path(
    db: AsyncSession,
    invoice_id: str,
    pdf_path: Optional[str],
    expected_updated_at: Optional[datetime] = None,
) -> bool:
    """Store the generated PDF reference without publishing a lifecycle event.

    `updated_at` is left untouched since the PDF is derived data. With
    `expected_updated_at` the write only applies if the invoice has not been
    modified since that version was read. Returns False when no row matched.
    """
    query = update(models.Invoice).where(models.Invoice.id == invoice_id)
    if expected_updated_at is not None:
        query = query.where(models.Invoice.updated_at == expected_updated_at)
    try:
        result = await db.execute(
            query.values(generated_pdf_path=pdf_path, updated_at=models.Invoice.updated_at)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "store invoice PDF path") from exc
    return result.rowcount > 0


async def mark_overdue_invoices(db: AsyncSession, now: Optional[datetime] = None) -> List[str]:
    """Flip pending, past-due invoices to overdue.

    The WHERE clause is re-evaluated at write time so a concurrent manual
    status change is never overwritten.
    """
    now = now or utcnow()
    try:
        result = await db.execute(
            update(models.Invoice)
            .where(and_(
                models.Invoice.status == schemas.InvoiceStatus.PENDING.value,
                models.Invoice.due_date < now,
            ))
            .values(status=schemas.InvoiceStatus.OVERDUE.value, updated_at=utcnow())
            .returning(models.Invoice.id)
            .execution_options(synchronize_session=False)
        )
        invoice_ids = list(result.scalars().all())
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "mark overdue invoices") from exc
    return invoice_ids


# === LISTING AND REPORTING ===

def _search_clause(search: str):
    """Free text over invoice number, description and the client's name or email"""
    pattern = f"%{search.strip()}%"
    matching_clients = select(models.Client.id).where(or_(
        models.Client.first_name.ilike(pattern),
        models.Client.last_name.ilike(pattern),
        models.Client.email.ilike(pattern),
    ))
    return or_(
        models.Invoice.invoice_number.ilike(pattern),
        models.Invoice.description.ilike(pattern),
        models.Invoice.client_id.in_(matching_clients),
    )


def _apply_filters(query, filters: schemas.InvoiceFilters):
    if filters.client_id:
        query = query.where(models.Invoice.client_id == filters.client_id)
    if filters.user_id:
        query = query.where(models.Invoice.user_id == filters.user_id)
    if filters.status:
        query = query.where(models.Invoice.status == filters.status.value)
    if filters.invoice_number:
        query = query.where(models.Invoice.invoice_number.ilike(f"%{filters.invoice_number}%"))
    if filters.search:
        query = query.where(_search_clause(filters.search))
    if filters.issue_date_from:
        query = query.where(models.Invoice.issue_date >= filters.issue_date_from)
    if filters.issue_date_to:
        query = query.where(models.Invoice.issue_date <= filters.issue_date_to)
    if filters.due_date_from:
        query = query.where(models.Invoice.due_date >= filters.due_date_from)
    if filters.due_date_to:
        query = query.where(models.Invoice.due_date <= filters.due_date_to)
    if filters.total_amount_min is not None:
        query = query.where(models.Invoice.total_amount >= filters.total_amount_min)
    if filters.total_amount_max is not None:
        query = query.where(models.Invoice.total_amount <= filters.total_amount_max)
    return query


async def list_invoices(
    db: AsyncSession,
    filters: schemas.InvoiceFilters,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Invoice], int]:
    """Get filtered, sorted page of invoices and the total match count"""
    if filters.sort_by not in SORTABLE_COLUMNS:
        raise InvoiceValidationError(
            f"Cannot sort by '{filters.sort_by}'",
            {"sortable": sorted(SORTABLE_COLUMNS)},
        )
    page = max(1, page)
    per_page = per_page or settings.DEFAULT_PAGE_SIZE
    per_page = max(1, min(per_page, settings.MAX_PAGE_SIZE))

    sort_column = SORTABLE_COLUMNS[filters.sort_by]
    order = asc if filters.sort_direction == schemas.SortDirection.ASC else desc

    query = _apply_filters(
        select(models.Invoice).options(
            selectinload(models.Invoice.client),
            selectinload(models.Invoice.user),
            selectinload(models.Invoice.items),
        ),
        filters,
    )
    count_query = _apply_filters(select(func.count(models.Invoice.id)), filters)

    try:
        total = (await db.execute(count_query)).scalar_one()
        result = await db.execute(
            query.order_by(order(sort_column), order(models.Invoice.id))
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "list invoices") from exc


async def get_recent_invoices(
    db: AsyncSession, limit: int = 10, user_id: Optional[str] = None
) -> List[models.Invoice]:
    """Most recently created invoices, newest first"""
    query = (
        select(models.Invoice)
        .options(
            selectinload(models.Invoice.client),
            selectinload(models.Invoice.user),
            selectinload(models.Invoice.items),
        )
        .order_by(desc(models.Invoice.created_at), desc(models.Invoice.id))
        .limit(max(1, min(limit, settings.MAX_PAGE_SIZE)))
    )
    if user_id:
        query = query.where(models.Invoice.user_id == user_id)
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "list recent invoices") from exc
    return list(result.scalars().all())


async def get_invoice_statistics(db: AsyncSession, user_id: Optional[str] = None) -> schemas.InvoiceStatistics:
    """Counts and amounts per status, optionally scoped to one issuer"""
    def _count(status: schemas.InvoiceStatus):
        return func.sum(case((models.Invoice.status == status.value, 1), else_=0))

    def _amount(status: schemas.InvoiceStatus):
        return func.sum(case((models.Invoice.status == status.value, models.Invoice.total_amount), else_=0))

    query = select(
        func.count(models.Invoice.id),
        _count(schemas.InvoiceStatus.PENDING),
        _count(schemas.InvoiceStatus.PAID),
        _count(schemas.InvoiceStatus.OVERDUE),
        func.sum(models.Invoice.total_amount),
        _amount(schemas.InvoiceStatus.PAID),
        _amount(schemas.InvoiceStatus.PENDING),
        _amount(schemas.InvoiceStatus.OVERDUE),
    )
    if user_id:
        query = query.where(models.Invoice.user_id == user_id)

    try:
        row = (await db.execute(query)).one()
    except SQLAlchemyError as exc:
        raise await _rollback_and_translate(db, exc, "compute invoice statistics") from exc

    def _money(value) -> Decimal:
        return Decimal(str(value or 0)).quantize(Decimal("0.01"))

    return schemas.InvoiceStatistics(
        total_invoices=row[0] or 0,
        pending_invoices=row[1] or 0,
        paid_invoices=row[2] or 0,
        overdue_invoices=row[3] or 0,
        total_amount=_money(row[4]),
        paid_amount=_money(row[5]),
        pending_amount=_money(row[6]),
        overdue_amount=_money(row[7]),
    )
