"""Business-rule validation of an extraction result."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from invoice_flow.models import InvoiceStatus

if TYPE_CHECKING:
    from invoice_flow.models import ExtractedInvoice, ExtractionConfidence

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.75
AUTO_APPROVAL_THRESHOLD = 0.95
MATH_TOLERANCE = Decimal("0.01")


def decide_status(
    extracted: ExtractedInvoice, confidence: ExtractionConfidence
) -> InvoiceStatus:
    """Return the status a freshly extracted invoice should start in.

    Checks run in order and the first failure routes the invoice to review:
    low overall confidence, line items not summing to the subtotal, then
    subtotal plus tax not matching the total. A clean extraction only skips
    review when its overall confidence reaches the auto-approval threshold.
    """
    reasons = review_reasons(extracted, confidence)
    if reasons:
        logger.info("Invoice %s needs review: %s", extracted.invoice_number, reasons[0])
        return InvoiceStatus.NEEDS_REVIEW

    if confidence.overall_confidence >= AUTO_APPROVAL_THRESHOLD:
        return InvoiceStatus.AWAITING_APPROVAL

    logger.info(
        "Invoice %s needs review: confidence %.2f below auto-approval threshold",
        extracted.invoice_number,
        confidence.overall_confidence,
    )
    return InvoiceStatus.NEEDS_REVIEW


def review_reasons(
    extracted: ExtractedInvoice, confidence: ExtractionConfidence
) -> list[str]:
    """List every failed check, in evaluation order."""
    reasons = []

    if confidence.overall_confidence < LOW_CONFIDENCE_THRESHOLD:
        reasons.append(
            f"low confidence extraction ({confidence.overall_confidence:.2f})"
        )

    subtotal_diff = abs(line_items_total(extracted) - extracted.subtotal)
    if subtotal_diff > MATH_TOLERANCE:
        reasons.append(f"line items differ from subtotal by {subtotal_diff}")

    total_diff = abs(
        extracted.subtotal + extracted.tax_amount - extracted.total_amount
    )
    if total_diff > MATH_TOLERANCE:
        reasons.append(f"subtotal plus tax differs from total by {total_diff}")

    return reasons


def line_items_total(extracted: ExtractedInvoice) -> Decimal:
    """Sum of the extracted line totals."""
    return sum((item.line_total for item in extracted.line_items), Decimal(0))
