from sqlalchemy import (
    Column, String, DateTime, Numeric, Integer, Text, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import uuid

from .database import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Issuer of invoices; only the role is consulted by the access policy"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="user")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    invoices = relationship("Invoice", back_populates="user")


class Client(Base):
    """Billed party"""
    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint("document_type", "document_number", name="uq_clients_document"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    document_type = Column(String(50), nullable=False)
    document_number = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    invoices = relationship("Invoice", back_populates="client")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Invoice(Base):
    """Invoice aggregate root; total_amount is derived from its items"""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    invoice_number = Column(String(50), nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Naive UTC
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)

    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)

    # File Storage
    generated_pdf_path = Column(String(500), nullable=True)
    attachment_path = Column(String(500), nullable=True)

    # Audit Trail
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    client = relationship("Client", back_populates="invoices")
    user = relationship("User", back_populates="invoices")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
    )

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
    )


class InvoiceItem(Base):
    """Line item, exclusively owned by one invoice"""
    __tablename__ = "invoice_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)

    # Tax Information
    tax_rate = Column(Numeric(5, 2), nullable=False, default=19.00)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="items")
