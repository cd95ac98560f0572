"""
Keeps each invoice's generated PDF consistent with the invoice itself.

The manager reacts to lifecycle events published by the store after commit.
PDF work is best effort: a failure is logged and leaves the invoice without a
PDF reference, it never fails the mutation that triggered it.
"""

import asyncio
import re
import secrets
import weakref
from typing import Iterable, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud, models, schemas
from .config import settings
from .database import utcnow
from .errors import DerivedArtifactError, NotFoundError
from .events import InvoiceCreated, InvoiceDeleted, InvoiceEvent, InvoicesMarkedOverdue, InvoiceUpdated
from .logging_config import get_logger
from .storage import BlobStorage, StorageError

logger = get_logger("pdf_manager")

RENDERING_FIELDS = frozenset({
    "client_id",
    "description",
    "notes",
    "issue_date",
    "due_date",
    "total_amount",
    "status",
    "items",
    "invoice_number",
})

REPLACE_ATTEMPTS = 3

_SIZE_UNITS = ("B", "KB", "MB", "GB")


def format_file_size(size: int) -> str:
    value = float(size)
    unit = _SIZE_UNITS[0]
    for unit in _SIZE_UNITS:
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            break
        value /= 1024
    return f"{round(value, 2):g} {unit}"


def needs_regeneration(changed_fields: Iterable[str]) -> bool:
    return bool(RENDERING_FIELDS.intersection(changed_fields))


class PdfConsistencyManager:
    """Generates, replaces and removes invoice PDFs in blob storage."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        renderer,
        storage: BlobStorage,
        timeout: Optional[float] = None,
        pdf_directory: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.renderer = renderer
        self.storage = storage
        self.timeout = timeout or settings.PDF_RENDER_TIMEOUT_SECONDS
        self.pdf_directory = (pdf_directory or settings.PDF_DIRECTORY).strip("/")
        self._tasks: Set[asyncio.Task] = set()
        # One lock per invoice, dropped once no task holds it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # === EVENT HANDLING ===

    async def handle(self, event: InvoiceEvent) -> None:
        """Event bus subscriber; never raises"""
        try:
            if isinstance(event, InvoiceCreated):
                await self._replace(event.invoice_id, event.name)
            elif isinstance(event, InvoiceUpdated):
                if needs_regeneration(event.changed_fields):
                    await self._replace(event.invoice_id, event.name, event.previous_pdf_path)
                else:
                    logger.debug(
                        f"Invoice {event.invoice_id} changed {sorted(event.changed_fields)}, PDF kept"
                    )
            elif isinstance(event, InvoiceDeleted):
                if event.pdf_path:
                    await self.delete_artifact(event.pdf_path)
            elif isinstance(event, InvoicesMarkedOverdue):
                for invoice_id in event.invoice_ids:
                    self._schedule(invoice_id, event.name)
        except Exception as exc:
            invoice_id = getattr(event, "invoice_id", None)
            logger.error(f"PDF handling failed for invoice {invoice_id} on event {event.name}: {exc}")

    def _schedule(self, invoice_id: str, event_name: str) -> None:
        task = asyncio.create_task(self._replace_logged(invoice_id, event_name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _replace_logged(self, invoice_id: str, event_name: str) -> None:
        try:
            await self._replace(invoice_id, event_name)
        except Exception as exc:
            logger.error(f"PDF handling failed for invoice {invoice_id} on event {event_name}: {exc}")

    async def drain(self) -> None:
        """Wait for background regenerations scheduled so far"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # === GENERATION ===

    def _lock_for(self, invoice_id: str) -> asyncio.Lock:
        lock = self._locks.get(invoice_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[invoice_id] = lock
        return lock

    def _artifact_path(self, invoice_number: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9]+", "-", invoice_number).strip("-") or "invoice"
        timestamp = utcnow().strftime("%Y-%m-%d_%H-%M-%S")
        return f"{self.pdf_directory}/invoice_{slug}_{timestamp}_{secrets.token_hex(4)}.pdf"

    async def _render(self, document: schemas.InvoiceDocument) -> bytes:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.renderer.render, document), self.timeout)
        except asyncio.TimeoutError as exc:
            raise DerivedArtifactError(
                f"PDF rendering timed out after {self.timeout}s", {"invoice_id": document.id}
            ) from exc
        except Exception as exc:
            raise DerivedArtifactError(f"PDF rendering failed: {exc}", {"invoice_id": document.id}) from exc

    async def _replace(
        self, invoice_id: str, event_name: str, previous_path: Optional[str] = None
    ) -> Optional[str]:
        """Delete the current artifact, render a fresh one and record its path.

        Runs under the invoice's lock. The new path is only recorded if the
        invoice is unchanged since it was read; otherwise the new artifact is
        removed and the invoice rendered again. Returns None when the invoice
        no longer exists.
        """
        async with self._lock_for(invoice_id), self.session_factory() as db:
            for attempt in range(1, REPLACE_ATTEMPTS + 1):
                invoice = await crud.get_invoice(db, invoice_id)
                if invoice is None:
                    if previous_path:
                        await self.delete_artifact(previous_path)
                    logger.info(f"Invoice {invoice_id} gone before PDF generation ({event_name})")
                    return None

                document = schemas.InvoiceDocument.model_validate(invoice)
                version = invoice.updated_at
                stale = {p for p in (previous_path, invoice.generated_pdf_path) if p}
                for path in stale:
                    await self.delete_artifact(path)
                previous_path = None
                if invoice.generated_pdf_path:
                    await crud.set_invoice_pdf_path(db, invoice_id, None)

                content = await self._render(document)
                path = self._artifact_path(document.invoice_number)
                try:
                    await asyncio.to_thread(self.storage.put, path, content)
                except StorageError as exc:
                    raise DerivedArtifactError(f"Failed to store PDF: {exc}", {"invoice_id": invoice_id}) from exc

                if await crud.set_invoice_pdf_path(db, invoice_id, path, expected_updated_at=version):
                    logger.info(f"PDF generated for invoice {invoice_id} ({event_name}): {path}")
                    return path

                # Changed or deleted while rendering
                await self.delete_artifact(path)
                logger.info(
                    f"Invoice {invoice_id} changed during PDF generation, artifact {path} removed "
                    f"(attempt {attempt}/{REPLACE_ATTEMPTS})"
                )

        raise DerivedArtifactError(
            "Invoice kept changing during PDF generation", {"invoice_id": invoice_id}
        )

    async def delete_artifact(self, path: str) -> None:
        """Remove an artifact; a missing one is not an error"""
        try:
            await asyncio.to_thread(self.storage.delete, path)
        except StorageError as exc:
            raise DerivedArtifactError(f"Failed to delete PDF {path}: {exc}", {"path": path}) from exc
        logger.debug(f"PDF artifact deleted: {path}")

    # === ON-DEMAND OPERATIONS ===

    async def regenerate(self, invoice_id: str) -> str:
        path = await self._replace(invoice_id, "regenerate")
        if path is None:
            raise NotFoundError("Invoice", invoice_id)
        return path

    async def download(self, invoice_id: str) -> Tuple[bytes, str]:
        """PDF bytes and download filename, generating the PDF when absent"""
        async with self.session_factory() as db:
            invoice = await crud.get_invoice(db, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        path = invoice.generated_pdf_path
        if not await self._artifact_exists(path):
            path = await self.regenerate(invoice_id)

        try:
            content = await asyncio.to_thread(self.storage.read, path)
        except StorageError as exc:
            raise DerivedArtifactError(f"Failed to read PDF: {exc}", {"invoice_id": invoice_id}) from exc
        return content, f"Invoice_{invoice.invoice_number}.pdf"

    # === READ MODEL ===

    async def _artifact_exists(self, path: Optional[str]) -> bool:
        if not path:
            return False
        try:
            return await asyncio.to_thread(self.storage.exists, path)
        except StorageError as exc:
            logger.warning(f"Could not check PDF {path}: {exc}")
            return False

    def _stat(self, path: str) -> Optional[Tuple[Optional[int], str]]:
        if not self.storage.exists(path):
            return None
        return self.storage.size(path), self.storage.url(path)

    async def pdf_info(self, invoice: models.Invoice) -> schemas.PdfInfo:
        path = invoice.generated_pdf_path
        if not path:
            return schemas.PdfInfo(invoice_id=invoice.id, has_pdf=False)

        try:
            stat = await asyncio.to_thread(self._stat, path)
        except StorageError as exc:
            logger.warning(f"Could not describe PDF {path} for invoice {invoice.id}: {exc}")
            return schemas.PdfInfo(invoice_id=invoice.id, has_pdf=False)
        if stat is None:
            return schemas.PdfInfo(invoice_id=invoice.id, has_pdf=False)

        size, url = stat
        return schemas.PdfInfo(
            invoice_id=invoice.id,
            has_pdf=True,
            pdf_url=url,
            pdf_size=format_file_size(size) if size is not None else None,
            pdf_path=path,
        )

    async def describe(self, invoice: models.Invoice) -> schemas.InvoiceRead:
        info = await self.pdf_info(invoice)
        return schemas.InvoiceRead.model_validate(invoice).model_copy(
            update={"has_pdf": info.has_pdf, "pdf_url": info.pdf_url, "pdf_size": info.pdf_size}
        )
