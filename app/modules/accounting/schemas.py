from pydantic import BaseModel
from typing import Optional, List
from uuid import UUID
from datetime import datetime

from app.common.schemas import Money
from app.modules.accounting.models import AccountType


class AccountOut(BaseModel):
    id: UUID
    code: str
    name: str
    account_type: AccountType
    balance: Money

    class Config:
        from_attributes = True


class AccountList(BaseModel):
    items: List[AccountOut]
    total: int
    limit: int
    offset: int


class JournalLineOut(BaseModel):
    line_no: int
    account_code: str
    debit: Money
    credit: Money
    narration: Optional[str] = None

    class Config:
        from_attributes = True


class JournalEntryOut(BaseModel):
    id: UUID
    voucher_no: str
    entry_date: datetime
    ref_type: str
    ref_id: UUID
    narration: Optional[str] = None
    lines: List[JournalLineOut]

    class Config:
        from_attributes = True


class JournalEntryList(BaseModel):
    items: List[JournalEntryOut]
    total: int
    limit: int
    offset: int
