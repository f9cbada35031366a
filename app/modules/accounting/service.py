"""
Posting de comprobantes contables para el ciclo de compras

Asientos generados:
- Factura:    Dr PURCHASE_EXP (subtotal - descuento), Dr GST_INPUT (impuesto), Cr SUPPLIER_<id> (total)
- Abono:      Dr SUPPLIER_<id>, Cr CASH / BANK
- Devolución: Dr SUPPLIER_<id> (total), Cr PURCH_RETURN (subtotal - descuento), Cr GST_INPUT (impuesto)
- Ajuste de factura: diferencia entre los totales anteriores y los nuevos

Todo se escribe en la sesión del llamador; nada se confirma aquí.
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from app.common.exceptions import UnbalancedJournalEntry
from app.modules.accounting.models import Account, AccountType, JournalEntry, JournalLine
from app.modules.accounting.schemas import AccountList, AccountOut, JournalEntryList
from app.modules.purchases.ledger import DocumentTotals, ZERO
from app.modules.sequences.service import SequenceService, JOURNAL_VOUCHER

logger = logging.getLogger(__name__)

CASH = "CASH"
BANK = "BANK"
GST_INPUT = "GST_INPUT"
PURCHASE_EXP = "PURCHASE_EXP"
PURCH_RETURN = "PURCH_RETURN"

DEFAULT_ACCOUNTS = {
    CASH: ("Caja", AccountType.ASSET),
    BANK: ("Bancos", AccountType.ASSET),
    GST_INPUT: ("Impuesto descontable", AccountType.ASSET),
    PURCHASE_EXP: ("Compras", AccountType.EXPENSE),
    PURCH_RETURN: ("Devoluciones en compras", AccountType.EXPENSE),
}

# (account_code, debit, credit)
PostingLine = Tuple[str, Decimal, Decimal]


def supplier_account_code(supplier_id: UUID) -> str:
    return f"SUPPLIER_{supplier_id}"


class PostingService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create_account(self, code: str) -> Account:
        # Sin bloqueo: la cuenta no se modifica al asentar. Una primera
        # inserción concurrente falla por unicidad y la unidad de trabajo se reintenta.
        account = self.db.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            if code.startswith("SUPPLIER_"):
                name, account_type = f"Proveedor {code[len('SUPPLIER_'):]}", AccountType.LIABILITY
            else:
                name, account_type = DEFAULT_ACCOUNTS.get(code, (code, AccountType.EXPENSE))
            account = Account(code=code, name=name, account_type=account_type)
            self.db.add(account)
            self.db.flush()
            logger.info(f"Account {code} created")
        return account

    def post(self, ref_type: str, ref_id: UUID, lines: List[PostingLine], narration: Optional[str] = None) -> JournalEntry:
        """
        Registra un comprobante balanceado. Solo inserta filas nuevas.

        Raises:
            UnbalancedJournalEntry: si Σ débitos != Σ créditos
        """
        lines = [(code, debit, credit) for code, debit, credit in lines if debit or credit]
        total_debit = sum((debit for _, debit, _ in lines), ZERO)
        total_credit = sum((credit for _, _, credit in lines), ZERO)
        if total_debit != total_credit:
            raise UnbalancedJournalEntry(
                f"Journal entry for {ref_type} is not balanced",
                ref_type=ref_type, ref_id=ref_id, debit=total_debit, credit=total_credit,
            )

        entry = JournalEntry(
            voucher_no=SequenceService(self.db).next_number(JOURNAL_VOUCHER),
            ref_type=ref_type,
            ref_id=ref_id,
            narration=narration,
        )
        accounts = {code: self.get_or_create_account(code) for code in sorted({c for c, _, _ in lines})}
        for line_no, (code, debit, credit) in enumerate(lines, start=1):
            account = accounts[code]
            entry.lines.append(JournalLine(
                account_id=account.id,
                account_code=code,
                line_no=line_no,
                debit=debit,
                credit=credit,
            ))

        self.db.add(entry)
        self.db.flush()
        logger.debug(f"Journal {entry.voucher_no} posted for {ref_type} {ref_id}: {total_debit}")
        return entry

    # ===== DOCUMENTOS DE COMPRA =====

    def post_bill(self, bill) -> Optional[JournalEntry]:
        if not bill.total_amount:
            return None
        return self.post("purchase_bill", bill.id, [
            (PURCHASE_EXP, bill.subtotal - bill.discount, ZERO),
            (GST_INPUT, bill.tax_total, ZERO),
            (supplier_account_code(bill.supplier_id), ZERO, bill.total_amount),
        ], narration=f"Factura {bill.bill_no}")

    def post_bill_adjustment(self, bill, previous: DocumentTotals) -> Optional[JournalEntry]:
        """Asiento por la diferencia al editar las líneas de una factura."""
        expense_delta = (bill.subtotal - bill.discount) - (previous.subtotal - previous.discount)
        tax_delta = bill.tax_total - previous.tax_total
        total_delta = bill.total_amount - previous.total_amount
        if not (expense_delta or tax_delta or total_delta):
            return None
        return self.post("bill_adjustment", bill.id, [
            _signed(PURCHASE_EXP, expense_delta),
            _signed(GST_INPUT, tax_delta),
            _signed(supplier_account_code(bill.supplier_id), -total_delta),
        ], narration=f"Ajuste factura {bill.bill_no}")

    def post_payment(self, bill, payment) -> JournalEntry:
        cash_account = BANK if payment.method.value == "bank" else CASH
        return self.post("bill_payment", payment.id, [
            (supplier_account_code(bill.supplier_id), payment.amount, ZERO),
            (cash_account, ZERO, payment.amount),
        ], narration=f"Abono factura {bill.bill_no}")

    def post_return(self, purchase_return) -> Optional[JournalEntry]:
        if not purchase_return.total_amount:
            return None
        return self.post("purchase_return", purchase_return.id, [
            (supplier_account_code(purchase_return.supplier_id), purchase_return.total_amount, ZERO),
            (PURCH_RETURN, ZERO, purchase_return.subtotal - purchase_return.discount),
            (GST_INPUT, ZERO, purchase_return.tax_total),
        ], narration=f"Devolución {purchase_return.return_no}")

    # ===== CONSULTAS =====

    def balances(self, codes: Optional[Iterable[str]] = None) -> Dict[str, Decimal]:
        """Saldo por cuenta = Σ débitos - Σ créditos de sus líneas."""
        query = (
            select(JournalLine.account_code, func.sum(JournalLine.debit - JournalLine.credit))
            .group_by(JournalLine.account_code)
        )
        if codes is not None:
            query = query.where(JournalLine.account_code.in_(list(codes)))
        return {code: Decimal(amount or 0) for code, amount in self.db.execute(query).all()}

    def get_balance(self, code: str) -> Decimal:
        return self.balances([code]).get(code, ZERO)

    def list_accounts(self, limit: int = 100, offset: int = 0) -> AccountList:
        query = self.db.query(Account)
        total = query.count()
        accounts = query.order_by(Account.code).offset(offset).limit(limit).all()
        balances = self.balances(account.code for account in accounts)
        items = [
            AccountOut(
                id=account.id,
                code=account.code,
                name=account.name,
                account_type=account.account_type,
                balance=balances.get(account.code, ZERO),
            )
            for account in accounts
        ]
        return AccountList(items=items, total=total, limit=limit, offset=offset)

    def list_entries(
        self,
        ref_type: Optional[str] = None,
        ref_id: Optional[UUID] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> JournalEntryList:
        query = self.db.query(JournalEntry)
        if ref_type:
            query = query.filter(JournalEntry.ref_type == ref_type)
        if ref_id:
            query = query.filter(JournalEntry.ref_id == ref_id)
        total = query.count()
        entries = query.order_by(JournalEntry.voucher_no).offset(offset).limit(limit).all()
        return JournalEntryList(items=entries, total=total, limit=limit, offset=offset)


def _signed(code: str, amount: Decimal) -> PostingLine:
    """Positive amounts are debits, negative amounts credits."""
    if amount >= 0:
        return code, amount, ZERO
    return code, ZERO, -amount
