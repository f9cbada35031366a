"""
Error taxonomy for the purchase lifecycle engine.

Every engine error is an HTTPException so services can raise them directly
and FastAPI turns them into responses. The detail body is always a dict:

    {"error": <kind>, "message": <text>, ...structured context...}

Context carries the attempted and allowed magnitudes so the caller can fix
the request (e.g. requested=50, remaining=12). Nothing is ever clamped.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder


class EngineError(HTTPException):
    """Base class for all business errors raised by the engine."""

    kind = "engine_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        detail = {"error": self.kind, "message": message}
        detail.update(jsonable_encoder(context))
        super().__init__(status_code=type(self).status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ValidationError(EngineError):
    """Malformed input: missing fields, non-positive quantities or amounts."""
    kind = "validation_error"


class NotFound(EngineError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(message or f"{entity} {entity_id} not found", entity=entity, id=entity_id)


class InvalidTransition(EngineError):
    """State machine rule violation (e.g. confirming a confirmed PO)."""
    kind = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class InvalidPOState(EngineError):
    """A receipt targets a PO that cannot accept goods."""
    kind = "invalid_po_state"


class AlreadyComplete(InvalidPOState):
    kind = "already_complete"


class OverReceipt(EngineError):
    kind = "over_receipt"


class OverPayment(EngineError):
    kind = "over_payment"


class InsufficientStock(EngineError):
    kind = "insufficient_stock"


class OverReturn(EngineError):
    kind = "over_return"


class Conflict(EngineError):
    """Concurrent mutation lost the race; safe to retry with fresh state."""
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class UnbalancedJournalEntry(EngineError):
    kind = "unbalanced_journal_entry"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
