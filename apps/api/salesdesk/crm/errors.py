from __future__ import annotations


class LeadEngineError(Exception):
    """Base class for lead workflow failures that map onto an HTTP status."""

    status_code = 400
    code = "crm_lead_error"

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(LeadEngineError):
    status_code = 404
    code = "crm_not_found"


class ConflictError(LeadEngineError):
    status_code = 409
    code = "crm_conflict"


class UnresolvableError(LeadEngineError):
    status_code = 422
    code = "crm_unresolvable"


class ValidationError(LeadEngineError):
    status_code = 422
    code = "crm_validation_failed"
