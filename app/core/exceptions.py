"""Pricing error taxonomy"""
from typing import Optional


class PricingError(Exception):
    error_code = "pricing_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        payload = {"error": self.error_code, "detail": self.message}
        if self.details:
            payload["errors"] = self.details
        return payload


class PricingValidationError(PricingError):
    """Bad request shape or values. Never mutates state."""

    error_code = "validation_error"
    status_code = 422

    @classmethod
    def from_pydantic(cls, exc, subject: str = "request"):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        summary = "; ".join(
            f"{'.'.join(str(p) for p in d['loc']) or subject}: {d['msg']}" for d in details
        )
        return cls(f"Invalid {subject}: {summary}", details)


class PricingConfigError(PricingError):
    """Stored pricing configuration is missing or malformed for a scope."""

    error_code = "config_error"
    status_code = 500


class ConcurrencyConflictError(PricingError):
    error_code = "concurrency_conflict"
    status_code = 409


class TransientStoreError(PricingError):
    error_code = "transient_error"
    status_code = 503


class DuplicateQuoteError(PricingError):
    """A quote id was already recorded in the audit log."""

    error_code = "duplicate_quote"
    status_code = 500
