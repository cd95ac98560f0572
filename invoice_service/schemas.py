from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# === CLIENT SCHEMAS ===
class ClientCreate(BaseModel):
    first_name: str = Field(..., max_length=255)
    last_name: str = Field(..., max_length=255)
    document_type: str = Field(..., max_length=50)
    document_number: str = Field(..., max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)


class ClientSummary(BaseModel):
    id: str
    first_name: str
    last_name: str
    full_name: str
    document_type: str
    document_number: str
    email: str
    phone: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserSummary(BaseModel):
    id: str
    name: str
    email: str
    role: str

    model_config = ConfigDict(from_attributes=True)


# === LINE ITEM SCHEMAS ===
class InvoiceItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Item name")
    quantity: int = Field(..., ge=1, description="Quantity")
    unit_price: Decimal = Field(..., ge=0, description="Unit price")
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, description="Tax rate percentage, 19.00 when omitted")


class InvoiceItemRead(BaseModel):
    id: str
    name: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


# === INVOICE SCHEMAS ===
class InvoiceCreate(BaseModel):
    """Create payload. Any total supplied by the caller is ignored."""

    invoice_number: Optional[str] = Field(None, min_length=1, max_length=50)
    client_id: str
    description: Optional[str] = None
    notes: Optional[str] = None
    issue_date: datetime
    due_date: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING
    attachment_path: Optional[str] = Field(None, max_length=500)
    items: List[InvoiceItemCreate] = Field(..., min_length=1, description="Invoice line items")

    normalize_dates = field_validator("issue_date", "due_date")(_to_naive_utc)

    @model_validator(mode="after")
    def check_due_date(self) -> "InvoiceCreate":
        if self.due_date < self.issue_date:
            raise ValueError("Due date must be on or after issue date")
        return self


class InvoiceUpdate(BaseModel):
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=50)
    client_id: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: Optional[InvoiceStatus] = None
    attachment_path: Optional[str] = Field(None, max_length=500)
    items: Optional[List[InvoiceItemCreate]] = Field(None, min_length=1)

    normalize_dates = field_validator("issue_date", "due_date")(_to_naive_utc)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class InvoiceRead(BaseModel):
    id: str
    invoice_number: str
    description: Optional[str] = None
    notes: Optional[str] = None
    issue_date: datetime
    due_date: datetime
    total_amount: Decimal
    status: InvoiceStatus
    attachment_path: Optional[str] = None
    client: ClientSummary
    user: UserSummary
    items: List[InvoiceItemRead] = []
    has_pdf: bool = False
    pdf_url: Optional[str] = None
    pdf_size: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceDocument(BaseModel):
    """Detached, fully hydrated snapshot handed to the document renderer."""

    id: str
    invoice_number: str
    description: Optional[str] = None
    notes: Optional[str] = None
    issue_date: datetime
    due_date: datetime
    total_amount: Decimal
    status: InvoiceStatus
    client: ClientSummary
    user: UserSummary
    items: List[InvoiceItemRead]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoicePage(BaseModel):
    data: List[InvoiceRead]
    total: int
    page: int
    per_page: int
    last_page: int


# === FILTER SCHEMAS ===
class InvoiceFilters(BaseModel):
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[InvoiceStatus] = None
    search: Optional[str] = None
    invoice_number: Optional[str] = None
    issue_date_from: Optional[datetime] = None
    issue_date_to: Optional[datetime] = None
    due_date_from: Optional[datetime] = None
    due_date_to: Optional[datetime] = None
    total_amount_min: Optional[Decimal] = None
    total_amount_max: Optional[Decimal] = None
    sort_by: str = "created_at"
    sort_direction: SortDirection = SortDirection.DESC

    normalize_dates = field_validator(
        "issue_date_from", "issue_date_to", "due_date_from", "due_date_to"
    )(_to_naive_utc)


# === PDF / REPORTING SCHEMAS ===
class PdfInfo(BaseModel):
    invoice_id: str
    has_pdf: bool
    pdf_url: Optional[str] = None
    pdf_size: Optional[str] = None
    pdf_path: Optional[str] = None


class OverdueSweepResult(BaseModel):
    updated: int
    invoice_ids: List[str]


class InvoiceStatistics(BaseModel):
    total_invoices: int
    pending_invoices: int
    paid_invoices: int
    overdue_invoices: int
    total_amount: Decimal
    paid_amount: Decimal
    pending_amount: Decimal
    overdue_amount: Decimal
