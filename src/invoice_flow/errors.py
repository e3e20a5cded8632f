"""Tagged error kinds raised across the invoice workflow."""

from __future__ import annotations


class InvoiceFlowError(Exception):
    """Base class for domain errors.

    Each subclass carries a stable ``code`` so callers can branch on the kind
    of failure without matching message text.
    """

    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidFileFormatError(InvoiceFlowError):
    code = "INVALID_FILE_FORMAT"


class FileTooLargeError(InvoiceFlowError):
    code = "FILE_TOO_LARGE"


class ExtractionFailedError(InvoiceFlowError):
    code = "EXTRACTION_FAILED"


class InvalidStatusTransitionError(InvoiceFlowError):
    code = "INVALID_STATUS_TRANSITION"


class InsufficientPermissionsError(InvoiceFlowError):
    code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(InvoiceFlowError):
    code = "NOT_FOUND"


class ValidationError(InvoiceFlowError):
    code = "VALIDATION_ERROR"


class DuplicateInvoiceError(InvoiceFlowError):
    """Reserved: same invoice number and vendor submitted twice."""

    code = "DUPLICATE_INVOICE"


class WorkflowError(InvoiceFlowError):
    """The workflow engine was asked to do something it cannot replay safely."""

    code = "WORKFLOW_ERROR"
