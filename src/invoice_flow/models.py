"""Domain and extraction models for invoice processing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CURRENCY = "USD"


class InvoiceStatus(StrEnum):
    PROCESSING = "processing"
    NEEDS_REVIEW = "needs_review"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELETED = "deleted"


class UserRole(StrEnum):
    FINANCE_CLERK = "finance_clerk"
    FINANCE_MANAGER = "finance_manager"
    ADMIN = "admin"


class TransitionAction(StrEnum):
    SUBMIT_FOR_APPROVAL = "submit_for_approval"
    APPROVE = "approve"
    REJECT = "reject"
    ASSIGN = "assign"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class UploadedFile:
    """An uploaded invoice document."""

    filename: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


# --- Extraction contract ---


class FieldConfidence(BaseModel):
    """An extracted value together with the extractor's confidence in it."""

    value: Any = None
    confidence: float = Field(ge=0.0, le=1.0)


class ExtractionConfidence(BaseModel):
    """Per-field confidence plus one overall score for an extraction."""

    vendor_name: FieldConfidence | None = None
    invoice_number: FieldConfidence | None = None
    invoice_date: FieldConfidence | None = None
    due_date: FieldConfidence | None = None
    subtotal: FieldConfidence | None = None
    tax_amount: FieldConfidence | None = None
    total_amount: FieldConfidence | None = None
    currency: FieldConfidence | None = None
    line_items: list[FieldConfidence] | None = None
    overall_confidence: float = Field(ge=0.0, le=1.0)


class ExtractedLineItem(BaseModel):
    """A single line item as read from the document."""

    description: str
    quantity: Decimal = Decimal(1)
    unit_price: Decimal
    line_total: Decimal
    product_code: str | None = None
    line_number: int = Field(ge=1)


class ExtractedInvoice(BaseModel):
    """Structured invoice fields produced by an extraction adapter."""

    vendor_name: str | None = None
    invoice_number: str = Field(min_length=1)
    invoice_date: date | None = None
    due_date: date | None = None
    subtotal: Decimal = Decimal(0)
    tax_amount: Decimal = Decimal(0)
    total_amount: Decimal = Decimal(0)
    currency: str = Field(default=DEFAULT_CURRENCY, pattern=r"^[A-Z]{3}$")
    line_items: list[ExtractedLineItem] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """Output of an extraction adapter: field values and their confidence."""

    invoice: ExtractedInvoice
    confidence: ExtractionConfidence


# --- Persisted records ---


class LineItem(BaseModel):
    id: UUID
    description: str | None
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    product_code: str | None = None
    line_number: int


class Invoice(BaseModel):
    """Full invoice record as stored in the database, with its line items."""

    id: UUID
    vendor_id: UUID | None = None
    vendor_name: str | None = None
    invoice_number: str
    invoice_date: date | None = None
    due_date: date | None = None
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None
    currency: str = DEFAULT_CURRENCY
    status: InvoiceStatus
    assigned_to: UUID | None = None
    approved_by: UUID | None = None
    rejection_reason: str | None = None
    purchase_order_number: str | None = None
    file_path: str
    extraction_confidence: ExtractionConfidence | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class Vendor(BaseModel):
    id: UUID
    name: str
    address: str | None = None
    tax_id: str | None = None
    payment_terms: str | None = None
    created_at: datetime
    updated_at: datetime


class User(BaseModel):
    id: UUID
    email: str
    name: str
    role: UserRole
    created_at: datetime
    updated_at: datetime


class InvoiceEvent(BaseModel):
    """One applied state-machine action, kept as an audit trail."""

    id: UUID
    invoice_id: UUID
    action: TransitionAction
    actor_id: UUID | None = None
    from_status: InvoiceStatus
    to_status: InvoiceStatus
    reason: str | None = None
    created_at: datetime


class QueueCounts(BaseModel):
    """Number of invoices currently in each status."""

    counts: dict[InvoiceStatus, int] = Field(default_factory=dict)

    def get(self, status: InvoiceStatus) -> int:
        return self.counts.get(status, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class ClerkDashboard(BaseModel):
    """Review queue for a finance clerk.

    ``processed`` counts invoices assigned to the clerk that have left review
    (awaiting approval or approved); it is ``None`` when no clerk is given.
    """

    counts: QueueCounts
    processed: int | None = None
    recent: list[Invoice] = Field(default_factory=list)


class ManagerDashboard(BaseModel):
    """Approval queue plus how many invoices have been decided."""

    counts: QueueCounts
    decided: int = 0
    approval_queue: list[Invoice] = Field(default_factory=list)


# --- Payloads ---


class SubmissionMetadata(BaseModel):
    """Optional hints supplied alongside an upload."""

    model_config = ConfigDict(extra="forbid")

    expected_vendor: str | None = None
    expected_amount: Decimal | None = None
    purchase_order_number: str | None = None


class LineItemUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(gt=0)
    line_total: Decimal = Field(gt=0)
    product_code: str | None = None
    line_number: int = Field(ge=1)


class InvoiceUpdate(BaseModel):
    """Field edits allowed while an invoice is still editable.

    ``line_items``, when present, replaces the whole set of line items.
    """

    model_config = ConfigDict(extra="forbid")

    vendor_id: UUID | None = None
    invoice_number: str | None = Field(default=None, min_length=1)
    invoice_date: date | None = None
    due_date: date | None = None
    subtotal: Decimal | None = Field(default=None, gt=0)
    tax_amount: Decimal | None = Field(default=None, ge=0)
    total_amount: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, pattern=r"^[A-Z]{3}$")
    line_items: list[LineItemUpdate] | None = None

    @field_validator("invoice_number", "currency")
    @classmethod
    def _not_null(cls, value: str | None) -> str | None:
        if value is None:
            msg = "may be omitted but not set to null"
            raise ValueError(msg)
        return value

    @field_validator("line_items")
    @classmethod
    def _unique_line_numbers(
        cls, items: list[LineItemUpdate] | None
    ) -> list[LineItemUpdate] | None:
        if items is not None:
            numbers = [item.line_number for item in items]
            if len(numbers) != len(set(numbers)):
                msg = "line_number values must be unique"
                raise ValueError(msg)
        return items

    def header_fields(self) -> dict[str, Any]:
        """Return the explicitly set invoice columns, excluding line items."""
        return self.model_dump(exclude_unset=True, exclude={"line_items"})


class VendorCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    address: str | None = None
    tax_id: str | None = None
    payment_terms: str | None = None


class VendorUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    address: str | None = None
    tax_id: str | None = None
    payment_terms: str | None = None


class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(min_length=1)
    role: UserRole
