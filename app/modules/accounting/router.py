from fastapi import APIRouter, Query
from typing import Optional
from uuid import UUID

from app.dependencies.dbDependecies import db_dependency
from app.modules.accounting.service import PostingService
from app.modules.accounting.schemas import AccountList, JournalEntryList

accounting_router = APIRouter(prefix="/accounting", tags=["Accounting"])


@accounting_router.get("/accounts", response_model=AccountList)
def list_accounts(
    db: db_dependency,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0)
):
    """Chart of accounts; balances are summed from journal lines (debits minus credits)."""
    return PostingService(db).list_accounts(limit=limit, offset=offset)


@accounting_router.get("/journal-entries", response_model=JournalEntryList)
def list_journal_entries(
    db: db_dependency,
    ref_type: Optional[str] = Query(None, description="purchase_bill, bill_payment, purchase_return, bill_adjustment"),
    ref_id: Optional[UUID] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0)
):
    return PostingService(db).list_entries(ref_type=ref_type, ref_id=ref_id, limit=limit, offset=offset)
