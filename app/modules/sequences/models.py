from app.database.database import Base
from sqlalchemy import Column, String, Integer, Sequence
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TimestampMixin


class DocumentSequence(Base, TimestampMixin):
    """Contador por tipo de documento, para bases sin secuencias nativas"""
    __tablename__ = "document_sequences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(20), nullable=False, unique=True, index=True)
    current_value = Column(Integer, nullable=False, default=0)


# Secuencias nativas (PostgreSQL). nextval no participa de la transacción:
# no bloquea a otras unidades de trabajo y un rollback deja un hueco.
DOCUMENT_SEQUENCES = {
    prefix: Sequence(f"{prefix.lower()}_number_seq", metadata=Base.metadata)
    for prefix in ("PO", "GRN", "PB", "PR", "JV")
}
