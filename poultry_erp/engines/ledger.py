"""
Ledger Reconciliation Engine
Appends financial entries and keeps every party's running balance.

One model only: each party has a single cumulative balance, and every
entry records the balance it left behind:

    balance = previous balance + signed amount - paid now

Purchases and sales raise what is owed, payments and advances lower it,
adjustments carry their own sign. Entries are never edited; a correction
is another entry.
"""

from datetime import date
from typing import Dict, List, Optional

from poultry_erp.exceptions import LedgerError, UnknownRecordError
from poultry_erp.schemas.dataset import Dataset
from poultry_erp.schemas.ledger import LedgerEntry, LedgerKind
from poultry_erp.schemas.output import PartyStatement
from poultry_erp.schemas.party import Party
from poultry_erp.utils import calendar_date
from poultry_erp.utils.logging import setup_logging, log_ledger_entry


logger = setup_logging(__name__)

BALANCE_TOLERANCE = 0.005


def _today() -> date:
    return date.today()


def signed_amount(kind: LedgerKind, amount: float) -> float:
    """Effect of an entry's amount on the amount owed."""
    kind = LedgerKind(kind)
    if kind in (LedgerKind.PURCHASE, LedgerKind.SALE):
        return amount
    if kind in (LedgerKind.PAYMENT, LedgerKind.ADVANCE):
        return -amount
    return amount


class LedgerEngine:
    """Ledger operations over an in-memory dataset."""

    def __init__(self, dataset: Dataset):
        self.dataset = dataset

    def _party(self, party_id: str) -> Party:
        party = self.dataset.find_party(party_id)
        if party is None:
            raise UnknownRecordError(f"Unknown party: {party_id}")
        return party

    def entries_for(self, party_id: str) -> List[LedgerEntry]:
        """A party's entries in creation order."""
        return [e for e in self.dataset.ledger_entries if e.party_id == party_id]

    def balance_of(self, party_id: str) -> float:
        """Outstanding balance after the party's latest entry."""
        entries = self.entries_for(party_id)
        return entries[-1].balance if entries else 0.0

    def replay_balance(self, party_id: str) -> float:
        """Recompute the balance from scratch by folding over the entries."""
        balance = 0.0
        for entry in self.entries_for(party_id):
            balance += signed_amount(entry.kind, entry.amount) - entry.paid
        return balance

    def record(
        self,
        party_id: str,
        kind: LedgerKind,
        amount: float,
        paid_now: float = 0.0,
        reference_id: Optional[str] = None,
        date: Optional[date] = None,
        description: str = "",
        amends_entry_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Append one entry for a party.

        Args:
            party_id: Customer or vendor id
            kind: purchase, sale, payment, advance or adjustment
            amount: Entry amount; only adjustments may be negative
            paid_now: Paid at the time of the event, recorded for audit
            reference_id: Document that caused the entry
            date: Transaction date, today when omitted
            description: Free text shown on statements

        Returns:
            The appended LedgerEntry, carrying the party's new balance
        """
        kind = LedgerKind(kind)
        party = self._party(party_id)

        if kind != LedgerKind.ADJUSTMENT and amount < 0:
            raise LedgerError(f"{kind.value} amount cannot be negative: {amount}")
        if paid_now < 0:
            raise LedgerError(f"Paid amount cannot be negative: {paid_now}")

        previous = self.balance_of(party_id)
        balance = previous + signed_amount(kind, amount) - paid_now

        entry = LedgerEntry(
            party_id=party.id,
            party_name=party.name,
            kind=kind,
            amount=amount,
            paid=paid_now,
            balance=balance,
            description=description,
            reference_id=reference_id,
            amends_entry_id=amends_entry_id,
            date=calendar_date(date) if date else _today(),
        )
        self.dataset.ledger_entries.append(entry)

        party.balance = balance
        if kind == LedgerKind.ADVANCE:
            party.advance += amount

        log_ledger_entry(logger, party.name, kind.value, amount, balance, reference_id)
        return entry

    def amend(self, entry_id: str, additional_payment: float, date: Optional[date] = None) -> LedgerEntry:
        """
        Record a further payment against an existing entry.

        The original entry is left untouched; a payment entry linked to it
        is appended instead.
        """
        original = self.dataset.find_ledger_entry(entry_id)
        if original is None:
            raise UnknownRecordError(f"Unknown ledger entry: {entry_id}")
        if additional_payment <= 0:
            raise LedgerError(f"Additional payment must be positive: {additional_payment}")

        description = f"Payment against {original.description}" if original.description else "Payment"
        return self.record(
            party_id=original.party_id,
            kind=LedgerKind.PAYMENT,
            amount=additional_payment,
            reference_id=original.reference_id,
            date=date,
            description=description,
            amends_entry_id=original.id,
        )

    def remove(self, entry: LedgerEntry) -> None:
        """
        Drop the most recent entry again after its commit failed.

        Only the party's latest entry can be removed, so no later balance
        depends on it.
        """
        entries = self.entries_for(entry.party_id)
        if not entries or entries[-1].id != entry.id:
            raise LedgerError("Only the latest entry of a party can be rolled back")

        self.dataset.ledger_entries.remove(entry)
        party = self._party(entry.party_id)
        party.balance = self.balance_of(entry.party_id)
        if entry.kind == LedgerKind.ADVANCE:
            party.advance -= entry.amount

    def statement(
        self,
        party_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> PartyStatement:
        """Entries of a party between two dates with opening and closing balances."""
        party = self._party(party_id)
        opening = 0.0
        selected: List[LedgerEntry] = []

        for entry in self.entries_for(party_id):
            if start and entry.date < start:
                opening = entry.balance
                continue
            if end and entry.date > end:
                continue
            selected.append(entry)

        closing = selected[-1].balance if selected else opening
        return PartyStatement(
            party_id=party.id,
            party_name=party.name,
            opening_balance=opening,
            entries=selected,
            closing_balance=closing,
        )

    def verify(self) -> Dict[str, str]:
        """
        Check every party against a replay of its entries.

        Returns:
            party id -> description of the first inconsistency found
        """
        problems: Dict[str, str] = {}

        for party in self.dataset.customers + self.dataset.vendors:
            running = 0.0
            for entry in self.entries_for(party.id):
                running += signed_amount(entry.kind, entry.amount) - entry.paid
                if abs(running - entry.balance) > BALANCE_TOLERANCE:
                    problems[party.id] = (
                        f"entry {entry.id} records balance {entry.balance:.2f}, replay gives {running:.2f}"
                    )
                    break
            else:
                if abs(running - party.balance) > BALANCE_TOLERANCE:
                    problems[party.id] = (
                        f"cached balance {party.balance:.2f}, replay gives {running:.2f}"
                    )

        if problems:
            logger.warning(f"Ledger verification found {len(problems)} inconsistent balance(s)")
        return problems
