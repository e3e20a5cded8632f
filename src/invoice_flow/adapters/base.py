"""Extraction adapter protocol and factory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from invoice_flow.config import get_extraction_provider

if TYPE_CHECKING:
    from invoice_flow.models import ExtractionResult


@runtime_checkable
class ExtractionAdapter(Protocol):
    """Protocol for services that turn an invoice document into structured fields.

    Implementations may raise any exception on failure; the workflow treats
    it as retryable.
    """

    def extract(self, data: bytes, mime_type: str) -> ExtractionResult: ...


def create_adapter(provider: str | None = None) -> ExtractionAdapter:
    """Build the adapter named by ``provider`` or EXTRACTION_PROVIDER."""
    provider = provider or get_extraction_provider()

    if provider == "llm":
        from invoice_flow.adapters.llm import LlmExtractionAdapter

        return LlmExtractionAdapter()

    if provider == "fixture":
        from invoice_flow.adapters.fixture import FixtureExtractionAdapter

        return FixtureExtractionAdapter()

    msg = f"Unknown extraction provider: {provider}"
    raise ValueError(msg)
