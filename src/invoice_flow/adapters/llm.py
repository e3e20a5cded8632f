"""LLM-based invoice extraction using pydantic-ai."""

from __future__ import annotations

import logging
from typing import Any

from pydantic_ai import Agent, BinaryContent

from invoice_flow.config import (
    get_anthropic_api_key,
    get_extraction_timeout,
    get_llm_model,
)
from invoice_flow.models import ExtractionResult

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are an invoice data extractor. Given a scanned or digital invoice, extract:

- invoice.vendor_name: The issuing company's name as printed on the invoice
- invoice.invoice_number: The invoice number or identifier
- invoice.invoice_date / invoice.due_date: Dates as YYYY-MM-DD, if present
- invoice.subtotal, invoice.tax_amount, invoice.total_amount: Numeric amounts \
without currency symbols
- invoice.currency: ISO 4217 currency code (e.g. "USD", "EUR")
- invoice.line_items: Every line in document order, numbered from 1, with \
description, quantity, unit_price, line_total and product_code when printed

Also report confidence: for each top-level field give the value you read and \
your confidence from 0.0 to 1.0, and an overall_confidence for the whole \
extraction. Use below 0.75 when the document may not be an invoice or key \
fields are illegible. If the currency is not stated, assume USD. Never invent \
line items that are not printed on the document.\
"""

_USER_PROMPT = "Extract the invoice fields from the attached document."


def create_extraction_agent() -> Agent[None, ExtractionResult]:
    """Create a pydantic-ai Agent configured for invoice extraction."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=ExtractionResult,
        system_prompt=_SYSTEM_PROMPT,
    )


class LlmExtractionAdapter:
    """Extraction adapter that sends the document to an LLM.

    Accepts an optional agent for dependency injection in tests. Each call is
    bounded by ``timeout`` seconds; a timeout surfaces as an exception and is
    retried by the workflow like any other adapter failure.
    """

    def __init__(
        self,
        agent: Agent[None, ExtractionResult] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._agent = agent
        self.timeout = timeout if timeout is not None else get_extraction_timeout()

    @property
    def agent(self) -> Agent[None, ExtractionResult]:
        if self._agent is None:
            self._agent = create_extraction_agent()
        return self._agent

    def extract(self, data: bytes, mime_type: str) -> ExtractionResult:
        logger.info("Extracting %d byte %s document via LLM", len(data), mime_type)
        result: Any = self.agent.run_sync(
            [_USER_PROMPT, BinaryContent(data=data, media_type=mime_type)],
            model_settings={"timeout": self.timeout},
        )
        output: ExtractionResult = result.output
        logger.info(
            "Extracted invoice %s (overall confidence %.2f)",
            output.invoice.invoice_number,
            output.confidence.overall_confidence,
        )
        return output
