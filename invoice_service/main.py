import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from math import ceil
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import crud, policy, schemas
from .auth import get_current_principal
from .config import settings
from .database import AsyncSessionLocal, get_db, init_models, utcnow
from .errors import InvoiceServiceError, NotFoundError, PersistenceError
from .events import InvoiceEventBus, event_bus
from .logging_config import get_logger, setup_logging
from .pdf_generator import PDFGenerator
from .pdf_manager import PdfConsistencyManager
from .status import run_overdue_sweep
from .storage import build_storage

logger = get_logger("api")

# PDF consistency wiring
pdf_manager = PdfConsistencyManager(
    AsyncSessionLocal,
    renderer=PDFGenerator(company_name=settings.COMPANY_NAME),
    storage=build_storage(settings),
)
event_bus.subscribe(pdf_manager.handle)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.AUTO_CREATE_TABLES:
        await init_models()
    logger.info(f"{settings.APP_NAME} {settings.VERSION} started ({settings.ENVIRONMENT})")
    yield
    await pdf_manager.drain()


app = FastAPI(
    title=settings.APP_NAME,
    description="Invoice lifecycle management with consistent PDF documents",
    version=settings.VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "clients", "description": "Billed parties"},
        {"name": "invoices", "description": "Invoice CRUD operations"},
        {"name": "reporting", "description": "Invoice statistics and overdue sweep"},
        {"name": "pdf", "description": "PDF generation and download"},
    ],
)


def get_event_bus() -> InvoiceEventBus:
    return event_bus


def get_pdf_manager() -> PdfConsistencyManager:
    return pdf_manager


# === ERROR HANDLERS ===

def error_envelope(code: str, http_status: int, message: str, details: Optional[dict] = None) -> dict:
    err = {"code": code, "http_status": http_status, "message": message}
    if details:
        err["details"] = details
    return {"error": err}


@app.exception_handler(InvoiceServiceError)
async def handle_invoice_service_error(request: Request, exc: InvoiceServiceError) -> Response:
    if isinstance(exc, PersistenceError):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        payload = error_envelope(exc.kind, exc.status_code, "Internal server error")
    else:
        payload = error_envelope(exc.kind, exc.status_code, exc.message, exc.details)
    return JSONResponse(status_code=exc.status_code, content=payload)


HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> Response:
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(code, exc.status_code, message),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> Response:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    payload = error_envelope("validation_error", 422, "Request validation failed", {"errors": errors})
    return JSONResponse(status_code=422, content=payload)


@app.exception_handler(Exception)
async def handle_unhandled_exception(request: Request, exc: Exception) -> Response:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=error_envelope("internal_error", 500, "Internal server error"))


# === HELPERS ===

async def _load_invoice(db: AsyncSession, invoice_id: str):
    invoice = await crud.get_invoice(db, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


def invoice_filters(
    client_id: Optional[str] = None,
    status: Optional[schemas.InvoiceStatus] = None,
    invoice_number: Optional[str] = None,
    search: Optional[str] = None,
    issue_date_from: Optional[datetime] = None,
    issue_date_to: Optional[datetime] = None,
    due_date_from: Optional[datetime] = None,
    due_date_to: Optional[datetime] = None,
    total_amount_min: Optional[Decimal] = None,
    total_amount_max: Optional[Decimal] = None,
    sort_by: str = "created_at",
    sort_direction: schemas.SortDirection = schemas.SortDirection.DESC,
) -> schemas.InvoiceFilters:
    return schemas.InvoiceFilters(
        client_id=client_id,
        status=status,
        invoice_number=invoice_number,
        search=search,
        issue_date_from=issue_date_from,
        issue_date_to=issue_date_to,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        total_amount_min=total_amount_min,
        total_amount_max=total_amount_max,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "invoice-service", "timestamp": utcnow()}


# === CLIENT ENDPOINTS ===

@app.post("/clients", response_model=schemas.ClientSummary, status_code=status.HTTP_201_CREATED, tags=["clients"])
async def create_client(
    client_data: schemas.ClientCreate,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db)
):
    return await crud.create_client(db, client_data)


@app.get("/clients/{client_id}", response_model=schemas.ClientSummary, tags=["clients"])
async def get_client(
    client_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db)
):
    client = await crud.get_client(db, client_id)
    if not client:
        raise NotFoundError("Client", client_id)
    return client


# === INVOICE ENDPOINTS ===

@app.post("/invoices", response_model=schemas.InvoiceRead, status_code=status.HTTP_201_CREATED, tags=["invoices"])
async def create_invoice(
    invoice_data: schemas.InvoiceCreate,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    bus: InvoiceEventBus = Depends(get_event_bus),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Create a new invoice with line items; totals are always recomputed"""
    policy.authorize_create(principal)
    invoice = await crud.create_invoice(db, user_id=principal.user_id, invoice_data=invoice_data, bus=bus)
    invoice = await _load_invoice(db, invoice.id)
    return await manager.describe(invoice)


@app.get("/invoices", response_model=schemas.InvoicePage, tags=["invoices"])
async def list_invoices(
    filters: schemas.InvoiceFilters = Depends(invoice_filters),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """List invoices with filtering; non-admins only see their own"""
    filters = policy.scope_filters(principal, filters)
    invoices, total = await crud.list_invoices(db, filters, page=page, per_page=per_page)
    return schemas.InvoicePage(
        data=await asyncio.gather(*(manager.describe(invoice) for invoice in invoices)),
        total=total,
        page=page,
        per_page=per_page,
        last_page=max(1, ceil(total / per_page)),
    )


@app.get("/invoices/recent", response_model=List[schemas.InvoiceRead], tags=["invoices"])
async def recent_invoices(
    limit: int = Query(10, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Newest invoices first; non-admins only see their own"""
    user_id = None if principal.is_admin else principal.user_id
    invoices = await crud.get_recent_invoices(db, limit=limit, user_id=user_id)
    return await asyncio.gather(*(manager.describe(invoice) for invoice in invoices))


@app.get("/invoices/stats", response_model=schemas.InvoiceStatistics, tags=["reporting"])
async def invoice_statistics(
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db)
):
    """Counts and amounts per status"""
    user_id = None if principal.is_admin else principal.user_id
    return await crud.get_invoice_statistics(db, user_id=user_id)


@app.post("/invoices/overdue-sweep", response_model=schemas.OverdueSweepResult, tags=["reporting"])
async def overdue_sweep(
    background_tasks: BackgroundTasks,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    bus: InvoiceEventBus = Depends(get_event_bus),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Mark pending, past-due invoices as overdue"""
    policy.authorize_admin(principal, "run the overdue sweep")
    invoice_ids = await run_overdue_sweep(db, bus=bus)
    # Regeneration already runs in the background; keep the request lifetime tied to it
    background_tasks.add_task(manager.drain)
    return schemas.OverdueSweepResult(updated=len(invoice_ids), invoice_ids=invoice_ids)


@app.get("/invoices/{invoice_id}", response_model=schemas.InvoiceRead, tags=["invoices"])
async def get_invoice(
    invoice_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Get specific invoice by ID"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "view", invoice)
    return await manager.describe(invoice)


@app.put("/invoices/{invoice_id}", response_model=schemas.InvoiceRead, tags=["invoices"])
async def update_invoice(
    invoice_id: str,
    invoice_update: schemas.InvoiceUpdate,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    bus: InvoiceEventBus = Depends(get_event_bus),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Update invoice details; supplied items replace the existing ones"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "update", invoice)

    updated = await crud.update_invoice(db, invoice_id, invoice_update, bus=bus)
    if not updated:
        raise NotFoundError("Invoice", invoice_id)
    return await manager.describe(await _load_invoice(db, invoice_id))


@app.delete("/invoices/{invoice_id}", tags=["invoices"])
async def delete_invoice(
    invoice_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    bus: InvoiceEventBus = Depends(get_event_bus)
):
    """Delete invoice, its items and its PDF"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "delete", invoice)

    if not await crud.delete_invoice(db, invoice_id, bus=bus):
        raise NotFoundError("Invoice", invoice_id)
    return {"message": "Invoice deleted successfully"}


@app.patch("/invoices/{invoice_id}/status", response_model=schemas.InvoiceRead, tags=["invoices"])
async def update_invoice_status(
    invoice_id: str,
    status_update: schemas.InvoiceStatusUpdate,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    bus: InvoiceEventBus = Depends(get_event_bus),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Explicit status change"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "update_status", invoice)

    if not await crud.update_invoice_status(db, invoice_id, status_update.status, bus=bus):
        raise NotFoundError("Invoice", invoice_id)
    return await manager.describe(await _load_invoice(db, invoice_id))


# === PDF ENDPOINTS ===

@app.get("/invoices/{invoice_id}/pdf", tags=["pdf"])
async def download_pdf(
    invoice_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Download invoice PDF, generating it first when missing"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "view", invoice)

    content, filename = await manager.download(invoice_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/invoices/{invoice_id}/pdf/regenerate", response_model=schemas.PdfInfo, tags=["pdf"])
async def regenerate_pdf(
    invoice_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    """Force a fresh PDF"""
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "update", invoice)

    await manager.regenerate(invoice_id)
    return await manager.pdf_info(await _load_invoice(db, invoice_id))


@app.get("/invoices/{invoice_id}/pdf/info", response_model=schemas.PdfInfo, tags=["pdf"])
async def pdf_info(
    invoice_id: str,
    principal: policy.Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: PdfConsistencyManager = Depends(get_pdf_manager)
):
    invoice = await _load_invoice(db, invoice_id)
    policy.authorize(principal, "view", invoice)
    return await manager.pdf_info(invoice)
