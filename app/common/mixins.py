"""
Common mixins for engine models
"""
from sqlalchemy import Column, DateTime, event
from sqlalchemy.orm import object_session
from sqlalchemy.sql import func

from app.common.exceptions import InvalidTransition


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


def _reject_mutation(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise InvalidTransition(
        f"{type(target).__name__} is immutable once created",
        document=type(target).__name__,
    )


def _reject_delete(mapper, connection, target):
    raise InvalidTransition(
        f"{type(target).__name__} cannot be deleted",
        document=type(target).__name__,
    )


class ImmutableMixin:
    """Documents that are historical facts: receipts, returns, journal entries."""

    @classmethod
    def __declare_last__(cls):
        event.listen(cls, "before_update", _reject_mutation)
        event.listen(cls, "before_delete", _reject_delete)
