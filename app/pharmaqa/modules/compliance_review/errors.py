from __future__ import annotations

from app.pharmaqa.audit import AuditDeliveryError as _AuditDeliveryError


class ReviewError(RuntimeError):
    """Base for every failure a review decision can report to its caller."""

    code = "review_error"
    http_status = 500

    def __init__(self, message: str, *, document_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.document_id = document_id

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(ReviewError):
    code = "validation_error"
    http_status = 400


class DocumentNotFound(ValidationError):
    code = "document_not_found"
    http_status = 404


class MissingJustification(ValidationError):
    code = "missing_justification"


class AuthenticationError(ReviewError):
    code = "authentication_failed"
    http_status = 401

    EMPTY_CREDENTIAL = "empty_credential"
    UNKNOWN_IDENTITY = "unknown_identity"
    INACTIVE_IDENTITY = "inactive_identity"
    INVALID_CREDENTIAL = "invalid_credential"

    def __init__(self, message: str, *, reason: str, document_id: str | None = None) -> None:
        super().__init__(message, document_id=document_id)
        self.reason = reason


class InvalidTransition(ReviewError):
    code = "invalid_transition"
    http_status = 409


class DecisionInProgress(InvalidTransition):
    code = "decision_in_progress"


class TransientError(ReviewError):
    code = "transient_error"
    http_status = 503

    def __init__(self, message: str, *, retryable: bool = True, document_id: str | None = None) -> None:
        super().__init__(message, document_id=document_id)
        self.retryable = retryable


class LedgerTimeout(TransientError):
    code = "ledger_timeout"


class DecisionTimeout(TransientError):
    code = "decision_timeout"


class TransactionError(ReviewError):
    code = "transaction_failed"
    http_status = 500


# Never propagated out of a decision; AuditLogger routes it to the operator channel.
AuditDeliveryError = _AuditDeliveryError
