"""Manage invoices from the command line: list, show, update status, check overdue."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud, models, schemas
from .config import settings
from .database import AsyncSessionLocal, init_models, utcnow
from .errors import InvoiceServiceError
from .events import InvoiceEventBus
from .logging_config import get_logger, setup_logging
from .pdf_generator import PDFGenerator
from .pdf_manager import PdfConsistencyManager
from .status import coerce_status, is_overdue, run_overdue_sweep
from .storage import build_storage

logger = get_logger("cli")

console = Console()
err_console = Console(stderr=True)

ACTIONS = ("list", "show", "update-status", "check-overdue", "regenerate-pdf")


def _money(value) -> str:
    return f"${value:,.2f}"


def _status_label(invoice: models.Invoice, now=None) -> str:
    label = invoice.status.capitalize()
    if is_overdue(invoice.status, invoice.due_date, now=now):
        label += " (past due)"
    return label


def _invoice_table(title: Optional[str] = None) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Number", no_wrap=True)
    table.add_column("Client")
    return table


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="invoice-manage",
        description="Manage invoices from command line - list, show, update status, check overdue invoices or regenerate PDFs",
    )
    parser.add_argument("action", choices=ACTIONS, help="Action to perform")
    parser.add_argument("--id", dest="invoice_id", help="Invoice ID (required for show, update-status and regenerate-pdf)")
    parser.add_argument("--status", help="New status for update-status (pending|paid|overdue)")
    parser.add_argument("--filter-status", help="Filter by status (for list)")
    parser.add_argument("--filter-client", help="Filter by client ID (for list)")
    parser.add_argument("--limit", type=int, default=10, help="Number of records to display (for list)")
    return parser.parse_args(argv)


async def _list(args: argparse.Namespace, session_factory: async_sessionmaker) -> int:
    filters = schemas.InvoiceFilters(
        status=coerce_status(args.filter_status) if args.filter_status else None,
        client_id=args.filter_client,
    )
    async with session_factory() as db:
        invoices, total = await crud.list_invoices(db, filters, page=1, per_page=args.limit)

    if not invoices:
        console.print("[yellow]No invoices found.[/yellow]")
        return 0

    now = utcnow()
    table = _invoice_table()
    table.add_column("Status")
    table.add_column("Total", justify="right", no_wrap=True)
    table.add_column("Issue Date", no_wrap=True)
    table.add_column("Due Date", no_wrap=True)
    for invoice in invoices:
        table.add_row(
            invoice.id,
            escape(invoice.invoice_number),
            escape(invoice.client.full_name) if invoice.client else "N/A",
            _status_label(invoice, now),
            _money(invoice.total_amount),
            f"{invoice.issue_date:%Y-%m-%d}",
            f"{invoice.due_date:%Y-%m-%d}",
        )

    console.print(f"Found {total} invoice(s):\n")
    console.print(table)
    logger.info(f"Invoices listed via command: count={len(invoices)} status={args.filter_status} client={args.filter_client}")
    return 0


async def _show(args: argparse.Namespace, session_factory: async_sessionmaker) -> int:
    if not args.invoice_id:
        err_console.print("[red]Invoice ID is required for show action. Use --id=<invoice id>[/red]")
        return 1

    async with session_factory() as db:
        invoice = await crud.get_invoice(db, args.invoice_id)
    if not invoice:
        err_console.print(f"[red]Invoice with ID {escape(args.invoice_id)} not found.[/red]")
        return 1

    console.print("[bold]Invoice Details:[/bold]\n")
    console.print(f"ID: {invoice.id}")
    console.print(f"Number: {escape(invoice.invoice_number)}")
    console.print(f"Client: {escape(invoice.client.full_name)}")
    console.print(f"User: {escape(invoice.user.name)}")
    console.print(f"Status: {_status_label(invoice)}")
    console.print(f"Total Amount: {_money(invoice.total_amount)}")
    console.print(f"Issue Date: {invoice.issue_date:%Y-%m-%d}")
    console.print(f"Due Date: {invoice.due_date:%Y-%m-%d}")
    if invoice.description:
        console.print(f"Description: {escape(invoice.description)}")
    if invoice.notes:
        console.print(f"Notes: {escape(invoice.notes)}")

    if invoice.items:
        table = Table(title="Items", show_header=True, header_style="bold magenta")
        table.add_column("Name")
        table.add_column("Quantity", justify="right")
        table.add_column("Unit Price", justify="right", no_wrap=True)
        table.add_column("Tax Rate", justify="right", no_wrap=True)
        table.add_column("Total", justify="right", no_wrap=True)
        for item in invoice.items:
            table.add_row(
                escape(item.name),
                str(item.quantity),
                _money(item.unit_price),
                f"{item.tax_rate}%",
                _money(item.total_amount),
            )
        console.print()
        console.print(table)
    return 0


async def _update_status(args: argparse.Namespace, session_factory: async_sessionmaker, bus: InvoiceEventBus) -> int:
    if not args.invoice_id:
        err_console.print("[red]Invoice ID is required for update-status action. Use --id=<invoice id>[/red]")
        return 1
    if not args.status:
        err_console.print("[red]Status is required for update-status action. Use --status=paid[/red]")
        return 1

    status = coerce_status(args.status)
    async with session_factory() as db:
        updated = await crud.update_invoice_status(db, args.invoice_id, status, bus=bus)
    if not updated:
        err_console.print(f"[red]Invoice with ID {escape(args.invoice_id)} not found or could not be updated.[/red]")
        return 1

    console.print(f"[green]Invoice {args.invoice_id} status updated to '{status.value}' successfully.[/green]")
    logger.info(f"Invoice status updated via command: invoice_id={args.invoice_id} new_status={status.value}")
    return 0


async def _check_overdue(session_factory: async_sessionmaker, bus: InvoiceEventBus) -> int:
    now = utcnow()
    async with session_factory() as db:
        invoice_ids = await run_overdue_sweep(db, now=now, bus=bus)
        if not invoice_ids:
            console.print("[green]No overdue invoices found.[/green]")
            return 0

        table = _invoice_table()
        table.add_column("Total", justify="right", no_wrap=True)
        table.add_column("Due Date", no_wrap=True)
        table.add_column("Days Overdue", justify="right")
        for invoice_id in invoice_ids:
            invoice = await crud.get_invoice(db, invoice_id)
            if invoice is None:
                continue
            table.add_row(
                invoice.id,
                escape(invoice.invoice_number),
                escape(invoice.client.full_name) if invoice.client else "N/A",
                _money(invoice.total_amount),
                f"{invoice.due_date:%Y-%m-%d}",
                str((now - invoice.due_date).days),
            )

    console.print(f"[yellow]Found {len(invoice_ids)} overdue invoice(s):[/yellow]\n")
    console.print(table)
    console.print(f"Updated {len(invoice_ids)} invoice(s) to overdue status.")
    return 0


async def _regenerate_pdf(args: argparse.Namespace, pdf_manager: PdfConsistencyManager) -> int:
    if not args.invoice_id:
        err_console.print("[red]Invoice ID is required for regenerate-pdf action. Use --id=<invoice id>[/red]")
        return 1
    path = await pdf_manager.regenerate(args.invoice_id)
    console.print(f"[green]PDF regenerated for invoice {args.invoice_id}:[/green] {escape(path)}")
    return 0


async def run(
    args: argparse.Namespace,
    session_factory: async_sessionmaker,
    pdf_manager: PdfConsistencyManager,
) -> int:
    bus = InvoiceEventBus()
    bus.subscribe(pdf_manager.handle)

    try:
        if args.action == "list":
            return await _list(args, session_factory)
        if args.action == "show":
            return await _show(args, session_factory)
        if args.action == "update-status":
            return await _update_status(args, session_factory, bus)
        if args.action == "check-overdue":
            return await _check_overdue(session_factory, bus)
        return await _regenerate_pdf(args, pdf_manager)
    except InvoiceServiceError as exc:
        err_console.print(f"[red]Command failed:[/red] {escape(exc.message)}")
        logger.error(f"Invoice command failed: action={args.action} error={exc.message}")
        return 1
    finally:
        await pdf_manager.drain()


async def _main(args: argparse.Namespace) -> int:
    if settings.AUTO_CREATE_TABLES:
        await init_models()
    pdf_manager = PdfConsistencyManager(
        AsyncSessionLocal,
        renderer=PDFGenerator(company_name=settings.COMPANY_NAME),
        storage=build_storage(settings),
    )
    return await run(args, AsyncSessionLocal, pdf_manager)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
