import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from invoice_service import crud, schemas
from invoice_service.database import utcnow
from invoice_service.errors import ConflictError, InvoiceValidationError
from invoice_service.events import InvoiceCreated, InvoiceDeleted, InvoiceEventBus, InvoiceUpdated


class RecordingBus(InvoiceEventBus):
    def __init__(self):
        super().__init__()
        self.events = []
        self.subscribe(self._record)

    async def _record(self, event):
        self.events.append(event)


# --- Create ---

@pytest.mark.asyncio
async def test_create_invoice_computes_totals_and_numbers(db, users, make_invoice_data):
    bus = RecordingBus()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data(), bus=bus)

    assert invoice.total_amount == Decimal("297.50")
    assert invoice.invoice_number.startswith(f"INV-{utcnow():%Y%m}-")
    assert invoice.status == "pending"
    assert [item.name for item in invoice.items] == ["Development", "Support"]
    assert invoice.client.full_name == "John Doe"
    assert invoice.user.email == "alice@example.com"
    assert bus.events == [InvoiceCreated(invoice_id=invoice.id, invoice_number=invoice.invoice_number)]


@pytest.mark.asyncio
async def test_round_trip_applies_default_tax_rate(db, users, make_invoice_data):
    data = make_invoice_data(items=[{"name": "Widget", "quantity": 3, "unit_price": "10.00"}])
    created = await crud.create_invoice(db, users["alice"].id, data)

    fetched = await crud.get_invoice(db, created.id)
    assert len(fetched.items) == 1
    assert fetched.items[0].tax_rate == Decimal("19.00")
    assert fetched.total_amount == Decimal("35.70")


@pytest.mark.asyncio
async def test_due_date_equal_to_issue_date_is_valid(db, users, make_invoice_data):
    now = utcnow()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data(issue_date=now, due_date=now))
    assert invoice.due_date == invoice.issue_date


@pytest.mark.asyncio
async def test_unknown_client_rejected(db, users, make_invoice_data):
    with pytest.raises(InvoiceValidationError):
        await crud.create_invoice(db, users["alice"].id, make_invoice_data(client_id="missing"))


@pytest.mark.asyncio
async def test_sequential_numbers_are_distinct(db, users, make_invoice_data):
    first = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    second = await crud.create_invoice(db, users["bob"].id, make_invoice_data())

    prefix = first.invoice_number[:-4]
    assert second.invoice_number == f"{prefix}{int(first.invoice_number[-4:]) + 1:04d}"


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_numbers(session_factory, users, make_invoice_data):
    async def _create(user):
        async with session_factory() as session:
            invoice = await crud.create_invoice(session, user.id, make_invoice_data())
            return invoice.invoice_number

    numbers = await asyncio.gather(_create(users["alice"]), _create(users["bob"]))

    assert len(set(numbers)) == 2
    prefix = numbers[0][:-4]
    assert sorted(numbers) == [f"{prefix}0001", f"{prefix}0002"]


@pytest.mark.asyncio
async def test_explicit_duplicate_number_conflicts(db, users, make_invoice_data):
    await crud.create_invoice(db, users["alice"].id, make_invoice_data(invoice_number="CUSTOM-1"))

    with pytest.raises(ConflictError):
        await crud.create_invoice(db, users["bob"].id, make_invoice_data(invoice_number="CUSTOM-1"))


@pytest.mark.asyncio
async def test_generated_number_collision_is_retried(db, users, make_invoice_data, monkeypatch):
    existing = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    candidates = iter([existing.invoice_number, "INV-RETRY-0001"])

    async def stale_number(session, now=None):
        return next(candidates)

    monkeypatch.setattr(crud, "next_invoice_number", stale_number)
    invoice = await crud.create_invoice(db, users["bob"].id, make_invoice_data())

    assert invoice.invoice_number == "INV-RETRY-0001"


@pytest.mark.asyncio
async def test_generated_number_collision_exhausts_attempts(db, users, make_invoice_data, monkeypatch):
    existing = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    taken = existing.invoice_number

    async def stale_number(session, now=None):
        return taken

    monkeypatch.setattr(crud, "next_invoice_number", stale_number)
    with pytest.raises(ConflictError):
        await crud.create_invoice(db, users["bob"].id, make_invoice_data())


# --- Update ---

@pytest.mark.asyncio
async def test_update_replaces_items_and_recomputes_total(db, users, make_invoice_data):
    bus = RecordingBus()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    update = schemas.InvoiceUpdate(items=[{"name": "Audit", "quantity": 1, "unit_price": "200.00", "tax_rate": "0"}])
    updated = await crud.update_invoice(db, invoice.id, update, bus=bus)

    assert [item.name for item in updated.items] == ["Audit"]
    assert updated.total_amount == Decimal("200.00")
    event = bus.events[-1]
    assert isinstance(event, InvoiceUpdated)
    assert event.changed_fields == frozenset({"items", "total_amount"})


@pytest.mark.asyncio
async def test_update_reports_only_changed_fields(db, users, make_invoice_data):
    bus = RecordingBus()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    await crud.update_invoice(db, invoice.id, schemas.InvoiceUpdate(attachment_path="uploads/po.pdf"), bus=bus)
    assert bus.events[-1].changed_fields == frozenset({"attachment_path"})

    # Same value again: nothing changed, nothing published
    published = len(bus.events)
    await crud.update_invoice(db, invoice.id, schemas.InvoiceUpdate(attachment_path="uploads/po.pdf"), bus=bus)
    assert len(bus.events) == published


@pytest.mark.asyncio
async def test_update_rejects_due_before_issue(db, users, make_invoice_data):
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    with pytest.raises(InvoiceValidationError):
        await crud.update_invoice(
            db, invoice.id, schemas.InvoiceUpdate(due_date=invoice.issue_date - timedelta(days=1))
        )


@pytest.mark.asyncio
async def test_update_rejects_taken_number(db, users, make_invoice_data):
    first = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    second = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    with pytest.raises(ConflictError):
        await crud.update_invoice(db, second.id, schemas.InvoiceUpdate(invoice_number=first.invoice_number))


@pytest.mark.asyncio
async def test_update_missing_invoice_returns_none(db, users):
    assert await crud.update_invoice(db, "missing", schemas.InvoiceUpdate(notes="x")) is None


# --- Delete ---

@pytest.mark.asyncio
async def test_delete_is_idempotent(db, users, make_invoice_data):
    bus = RecordingBus()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    assert await crud.delete_invoice(db, invoice.id, bus=bus) is True
    assert isinstance(bus.events[-1], InvoiceDeleted)
    assert await crud.get_invoice(db, invoice.id) is None
    assert await crud.delete_invoice(db, invoice.id, bus=bus) is False


# --- Status ---

@pytest.mark.asyncio
async def test_update_status_publishes_status_change(db, users, make_invoice_data):
    bus = RecordingBus()
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    assert await crud.update_invoice_status(db, invoice.id, schemas.InvoiceStatus.PAID, bus=bus)
    assert bus.events[-1].changed_fields == frozenset({"status"})
    assert (await crud.get_invoice(db, invoice.id)).status == "paid"

    # Unchanged status is a no-op
    published = len(bus.events)
    assert await crud.update_invoice_status(db, invoice.id, schemas.InvoiceStatus.PAID, bus=bus)
    assert len(bus.events) == published


@pytest.mark.asyncio
async def test_update_status_missing_invoice(db, users):
    assert await crud.update_invoice_status(db, "missing", schemas.InvoiceStatus.PAID) is False


@pytest.mark.asyncio
async def test_set_pdf_path_reports_missing_invoice(db, users, make_invoice_data):
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())

    assert await crud.set_invoice_pdf_path(db, invoice.id, "invoices/a.pdf") is True
    assert (await crud.get_invoice(db, invoice.id)).generated_pdf_path == "invoices/a.pdf"
    assert await crud.set_invoice_pdf_path(db, "missing", "invoices/b.pdf") is False


@pytest.mark.asyncio
async def test_set_pdf_path_is_conditional_on_version(db, users, make_invoice_data):
    invoice = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    version = invoice.updated_at

    assert await crud.set_invoice_pdf_path(db, invoice.id, "invoices/a.pdf", expected_updated_at=version) is True
    # Recording the PDF does not count as a modification
    assert (await crud.get_invoice(db, invoice.id)).updated_at == version

    await crud.update_invoice_status(db, invoice.id, schemas.InvoiceStatus.PAID)

    assert await crud.set_invoice_pdf_path(db, invoice.id, "invoices/b.pdf", expected_updated_at=version) is False
    assert (await crud.get_invoice(db, invoice.id)).generated_pdf_path == "invoices/a.pdf"


# --- Listing and statistics ---

@pytest.mark.asyncio
async def test_list_filters_sorts_and_paginates(db, users, make_invoice_data):
    for index in range(3):
        await crud.create_invoice(
            db,
            users["alice"].id,
            make_invoice_data(items=[{"name": "Hours", "quantity": index + 1, "unit_price": "100", "tax_rate": "0"}]),
        )
    await crud.create_invoice(db, users["bob"].id, make_invoice_data())

    filters = schemas.InvoiceFilters(
        user_id=users["alice"].id, sort_by="total_amount", sort_direction=schemas.SortDirection.ASC
    )
    page, total = await crud.list_invoices(db, filters, page=1, per_page=2)
    assert total == 3
    assert [invoice.total_amount for invoice in page] == [Decimal("100.00"), Decimal("200.00")]

    page, total = await crud.list_invoices(db, filters, page=2, per_page=2)
    assert [invoice.total_amount for invoice in page] == [Decimal("300.00")]

    rich, total = await crud.list_invoices(db, schemas.InvoiceFilters(total_amount_min=Decimal("250")))
    assert {invoice.total_amount for invoice in rich} == {Decimal("297.50"), Decimal("300.00")}


@pytest.mark.asyncio
async def test_list_search_spans_invoice_and_client_fields(db, users, make_invoice_data):
    audit = await crud.create_invoice(db, users["alice"].id, make_invoice_data(description="Security audit"))
    other = await crud.create_invoice(db, users["alice"].id, make_invoice_data(description="Training"))

    found, total = await crud.list_invoices(db, schemas.InvoiceFilters(search="AUDIT"))
    assert total == 1
    assert found[0].id == audit.id

    found, total = await crud.list_invoices(db, schemas.InvoiceFilters(search=other.invoice_number))
    assert [invoice.id for invoice in found] == [other.id]

    found, total = await crud.list_invoices(db, schemas.InvoiceFilters(search="john.doe@"))
    assert total == 2


@pytest.mark.asyncio
async def test_recent_invoices_newest_first(db, users, make_invoice_data):
    first = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    second = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    bobs = await crud.create_invoice(db, users["bob"].id, make_invoice_data())

    recent = await crud.get_recent_invoices(db, limit=2)
    assert [invoice.id for invoice in recent] == [bobs.id, second.id]

    alices = await crud.get_recent_invoices(db, limit=10, user_id=users["alice"].id)
    assert [invoice.id for invoice in alices] == [second.id, first.id]
    assert alices[0].client.full_name == "John Doe"


@pytest.mark.asyncio
async def test_list_rejects_unknown_sort_column(db):
    with pytest.raises(InvoiceValidationError):
        await crud.list_invoices(db, schemas.InvoiceFilters(sort_by="password"))


@pytest.mark.asyncio
async def test_statistics_by_status(db, users, make_invoice_data):
    first = await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    await crud.create_invoice(db, users["alice"].id, make_invoice_data())
    await crud.create_invoice(db, users["bob"].id, make_invoice_data())
    await crud.update_invoice_status(db, first.id, schemas.InvoiceStatus.PAID)

    stats = await crud.get_invoice_statistics(db)
    assert stats.total_invoices == 3
    assert stats.paid_invoices == 1
    assert stats.pending_invoices == 2
    assert stats.total_amount == Decimal("892.50")
    assert stats.paid_amount == Decimal("297.50")

    alice = await crud.get_invoice_statistics(db, user_id=users["alice"].id)
    assert alice.total_invoices == 2


# --- Clients ---

@pytest.mark.asyncio
async def test_duplicate_client_conflicts(db, client_record):
    with pytest.raises(ConflictError):
        await crud.create_client(
            db,
            schemas.ClientCreate(
                first_name="Jane",
                last_name="Doe",
                document_type="CC",
                document_number="987654321",
                email=client_record.email,
            ),
        )
