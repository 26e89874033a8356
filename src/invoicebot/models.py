"""
SQLAlchemy ORM models for the invoice bot.

Defines the database schema using SQLAlchemy 2.0 declarative mapping with
Mapped types and mapped_column. Organizations own clients, invoices and
chat conversations; the remaining tables back numbering, deduplication,
rate limiting and the audit trail.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Organization(Base):
    """
    Organization (tenant) issuing invoices.

    Read-only input for the conversation flow: VAT status, default rate,
    currency, invoice prefix and the messaging identifiers that route
    webhook traffic to it.
    """

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    ico: Mapped[str] = mapped_column(String(8), nullable=False)
    dic: Mapped[Optional[str]] = mapped_column(String(14), nullable=True)
    is_vat_payer: Mapped[bool] = mapped_column(nullable=False, default=False)

    address_street: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    address_city: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    address_zip: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    address_country: Mapped[str] = mapped_column(String(2), nullable=False, default="CZ")

    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CZK")
    default_vat_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(5, 2), nullable=True, default=Decimal("21")
    )
    invoice_prefix: Mapped[str] = mapped_column(String(20), nullable=False, default="")

    # Webhook routing identifiers
    whatsapp_phone_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    whatsapp_business_account_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def vat_payer(self) -> bool:
        """An organization with a DIČ is treated as a VAT payer."""
        return bool(self.is_vat_payer) or bool(self.dic)

    @property
    def effective_vat_rate(self) -> Decimal:
        return Decimal(self.default_vat_rate) if self.default_vat_rate is not None else Decimal("21")

    def __repr__(self) -> str:
        return f"Organization(id={self.id!r}, name={self.name!r}, ico={self.ico!r})"


class Client(Base):
    """Invoice recipient owned by an organization."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    ico: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    address_city: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"Client(id={self.id!r}, name={self.name!r}, ico={self.ico!r})"


class Invoice(Base):
    """
    Invoice issued by an organization.

    Status progresses through: draft → sent → paid/cancelled. Invoices
    created over chat are stored as "draft" and marked "sent" once the
    document has been delivered to the chat.
    """

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[int] = mapped_column(
        ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False
    )

    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False)
    variable_symbol: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CZK")

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_via: Mapped[str] = mapped_column(String(20), nullable=False, default="web")
    pdf_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_number"),
        CheckConstraint(
            "status IN ('draft', 'sent', 'paid', 'cancelled')",
            name="ck_invoice_status",
        ),
        CheckConstraint(
            "created_via IN ('web', 'whatsapp', 'messenger')",
            name="ck_invoice_created_via",
        ),
        CheckConstraint("due_date >= issue_date", name="ck_invoice_due_after_issue"),
    )

    def __repr__(self) -> str:
        return (
            f"Invoice(id={self.id!r}, invoice_number={self.invoice_number!r}, "
            f"total={self.total}, status={self.status!r})"
        )


class InvoiceItem(Base):
    """Immutable line item of an invoice, with its computed amounts."""

    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="ks")
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_item_quantity"),
        CheckConstraint("vat_rate >= 0 AND vat_rate <= 100", name="ck_invoice_item_vat_rate"),
    )


class InvoiceCounter(Base):
    """Last allocated invoice sequence per (organization, year)."""

    __tablename__ = "counters"

    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Conversation(Base):
    """
    Invoice wizard state for one (organization, phone) pair.

    ``context`` holds the serialized draft for the current state.
    ``timeout_at`` is reserved: it is cleared on every save and never read.
    """

    __tablename__ = "wa_conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    whatsapp_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="idle")
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timeout_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "whatsapp_phone", name="uq_conversation_phone"),
    )

    def __repr__(self) -> str:
        return f"Conversation(id={self.id!r}, state={self.state!r})"


class ProcessedMessage(Base):
    """Dedup marker: one row per provider message id already handled."""

    __tablename__ = "wa_message_cache"

    message_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class RateLimitWindow(Base):
    """Message counter for one sender and one minute bucket."""

    __tablename__ = "wa_rate_limits"

    whatsapp_phone: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AuditLog(Base):
    """Audit trail entry for changes made outside the web UI."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
