"""Deterministic extraction adapter returning fixed invoice data."""

from __future__ import annotations

import hashlib
import logging
from datetime import date, timedelta
from decimal import Decimal

from invoice_flow.models import (
    ExtractedInvoice,
    ExtractedLineItem,
    ExtractionConfidence,
    ExtractionResult,
    FieldConfidence,
)

logger = logging.getLogger(__name__)


class FixtureExtractionAdapter:
    """Stand-in for a real extraction service.

    Every document yields the same Acme Corp invoice; only the invoice number
    varies, derived from the content hash so identical uploads produce
    identical results.
    """

    def __init__(
        self,
        overall_confidence: float = 0.93,
        invoice_date: date = date(2024, 1, 15),
    ) -> None:
        self.overall_confidence = overall_confidence
        self.invoice_date = invoice_date

    def extract(self, data: bytes, mime_type: str) -> ExtractionResult:
        digest = hashlib.sha256(data).hexdigest()[:12].upper()
        logger.info("Fixture extraction of %d byte %s document", len(data), mime_type)

        invoice = ExtractedInvoice(
            vendor_name="Acme Corp",
            invoice_number=f"INV-{digest}",
            invoice_date=self.invoice_date,
            due_date=self.invoice_date + timedelta(days=30),
            subtotal=Decimal("1000.00"),
            tax_amount=Decimal("80.00"),
            total_amount=Decimal("1080.00"),
            currency="USD",
            line_items=[
                ExtractedLineItem(
                    description="Professional Services",
                    quantity=Decimal(1),
                    unit_price=Decimal("1000.00"),
                    line_total=Decimal("1000.00"),
                    line_number=1,
                )
            ],
        )
        confidence = ExtractionConfidence(
            vendor_name=FieldConfidence(value=invoice.vendor_name, confidence=0.95),
            invoice_number=FieldConfidence(value=invoice.invoice_number, confidence=0.98),
            invoice_date=FieldConfidence(
                value=invoice.invoice_date.isoformat(), confidence=0.92
            ),
            total_amount=FieldConfidence(value=str(invoice.total_amount), confidence=0.97),
            overall_confidence=self.overall_confidence,
        )
        return ExtractionResult(invoice=invoice, confidence=confidence)
