"""
Contabilidad de partida doble para compras

- Account: plan de cuentas; el saldo se deriva de las líneas (Σ débitos - Σ créditos)
- JournalEntry / JournalLine: comprobantes inmutables y balanceados
"""

from app.database.database import Base
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Numeric, Enum, Text, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TimestampMixin, ImmutableMixin
import enum


class AccountType(enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EXPENSE = "expense"
    INCOME = "income"


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(60), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    account_type = Column(Enum(AccountType), nullable=False)


class JournalEntry(Base, ImmutableMixin, TimestampMixin):
    __tablename__ = "journal_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    voucher_no = Column(String(30), nullable=False, unique=True, index=True)
    entry_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    ref_type = Column(String(50), nullable=False, index=True)  # purchase_bill, bill_payment, ...
    ref_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    narration = Column(Text, nullable=True)

    lines = relationship("JournalLine", back_populates="entry", cascade="all", order_by="JournalLine.line_no")


class JournalLine(Base, ImmutableMixin, TimestampMixin):
    __tablename__ = "journal_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    entry_id = Column(UUID(as_uuid=True), ForeignKey("journal_entries.id"), nullable=False, index=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    account_code = Column(String(60), nullable=False)  # Snapshot del código
    line_no = Column(Integer, nullable=False)
    debit = Column(Numeric(28, 12), nullable=False, default=0)
    credit = Column(Numeric(28, 12), nullable=False, default=0)
    narration = Column(String(255), nullable=True)

    entry = relationship("JournalEntry", back_populates="lines")

    __table_args__ = (
        CheckConstraint("debit >= 0 AND credit >= 0", name="ck_journal_line_non_negative"),
    )
