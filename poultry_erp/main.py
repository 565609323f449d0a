"""
Main entry point for the ERP core.

An ErpSession is opened at session start, holds the loaded dataset in
memory and writes it back through the entity store after every business
event. A document is always committed before its ledger entry is appended;
if the store cannot save, the in-memory change is undone and the caller
gets a CommitResult explaining what did not happen.
"""

from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from rapidfuzz import fuzz

from poultry_erp.config import get_config
from poultry_erp.engines.ledger import LedgerEngine, signed_amount
from poultry_erp.engines.numbering import derive_party_code, number_for_delivery, number_for_invoice
from poultry_erp.engines.parser import parse_bulk_text
from poultry_erp.engines.scheduler import AutoSaveScheduler
from poultry_erp.exceptions import DocumentValidationError, LedgerError
from poultry_erp.schemas.dataset import Dataset, VendorRate
from poultry_erp.schemas.delivery import DeliveryDocument, LineUnit
from poultry_erp.schemas.invoice import Invoice, InvoiceLine, InvoiceStatus, next_version
from poultry_erp.schemas.ledger import CashFlowEntry, LedgerEntry, LedgerKind
from poultry_erp.schemas.output import CommitResult, FastInvoiceReport, PartyStatement
from poultry_erp.schemas.party import Party
from poultry_erp.store import EntityStore, FileStorage
from poultry_erp.utils import calendar_date, dict_to_json_string, now
from poultry_erp.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()

SAVE_FAILED = "Could not save to storage; check free space and permissions, then try again."
PAYMENT_METHODS = ("cash", "online")

Draft = Union[DeliveryDocument, Invoice]


class ErpSession:
    """One user session over the stored dataset."""

    def __init__(self, store: EntityStore, dataset: Optional[Dataset] = None):
        self.store = store
        self.dataset = dataset if dataset is not None else store.load()
        self.ledger = LedgerEngine(self.dataset)
        self.scheduler = AutoSaveScheduler()

    @classmethod
    def open(cls, store: Optional[EntityStore] = None) -> "ErpSession":
        """Open a session, loading the snapshot from ``store`` (default: DATA_PATH)."""
        if store is None:
            store = EntityStore(FileStorage(config.DATA_PATH))

        session = cls(store)
        if store.last_load_recovered:
            logger.warning("Stored data could not be read; the session starts from an empty dataset")

        logger.info(
            f"Session opened: {len(session.dataset.delivery_documents)} deliveries, "
            f"{len(session.dataset.invoices)} invoices, "
            f"{len(session.dataset.customers) + len(session.dataset.vendors)} parties"
        )
        return session

    @property
    def recovered_from_corruption(self) -> bool:
        return self.store.last_load_recovered

    def save(self) -> bool:
        return self.store.save(self.dataset)

    def close(self) -> bool:
        """Stop auto-save and flush everything."""
        self.scheduler.stop()
        return self.save()

    def _persist(self, undo: Callable[[], None]) -> bool:
        if self.store.save(self.dataset):
            return True
        undo()
        return False

    def _reload(self) -> None:
        self.dataset = self.store.load()
        self.ledger = LedgerEngine(self.dataset)

    # ---------------- PARTIES ----------------

    def add_party(
        self,
        name: str,
        role: str,
        code: Optional[str] = None,
        opening_balance: float = 0.0,
        **details,
    ) -> Party:
        """
        Register a customer or vendor.

        Kept in memory until the next commit or ``save()``. A non-zero
        opening balance is entered as an adjustment so the ledger stays the
        only source of balances.
        """
        name = (name or "").strip()
        if not name:
            raise DocumentValidationError("Party name is required")
        if role not in ("customer", "vendor"):
            raise DocumentValidationError(f"Unknown party role: {role}")

        party = Party(name=name, role=role, code=code or derive_party_code(name), **details)
        if role == "customer":
            self.dataset.customers.append(party)
        else:
            self.dataset.vendors.append(party)

        if opening_balance:
            self.ledger.record(party.id, LedgerKind.ADJUSTMENT, opening_balance, description="Opening balance")

        logger.info(f"Added {role} {party.name} ({party.code})")
        return party

    def find_party(self, party_id: str) -> Optional[Party]:
        return self.dataset.find_party(party_id)

    def match_customer(self, name: str) -> Optional[Party]:
        """Best existing customer for a typed or pasted name, if close enough."""
        wanted = name.strip().upper()
        best: Optional[Party] = None
        best_score = 0.0

        for customer in self.dataset.customers:
            candidate = customer.name.strip().upper()
            if candidate == wanted:
                return customer

            score = fuzz.token_set_ratio(wanted, candidate) / 100.0
            if score > best_score:
                best, best_score = customer, score

        if best is not None and best_score >= config.CUSTOMER_MATCH_THRESHOLD:
            logger.debug(f"Matched '{name}' to customer '{best.name}' (similarity: {best_score:.2f})")
            return best
        return None

    def find_or_create_customer(self, name: str, default_rate: Optional[float] = None) -> Tuple[Party, bool]:
        """Returns (customer, created)."""
        customer = self.match_customer(name)
        if customer is not None:
            return customer, False
        return self.add_party(name, "customer", default_rate=default_rate), True

    def set_vendor_rate(self, vendor_name: str, rate: float, rate_date: Optional[date] = None) -> VendorRate:
        """Remember the purchase rate a vendor quoted."""
        if rate <= 0:
            raise DocumentValidationError("Vendor rate must be positive")
        vendor_rate = VendorRate(vendor_name=vendor_name, rate=rate, date=calendar_date(rate_date or date.today()))
        self.dataset.settings.vendor_rates.append(vendor_rate)
        return vendor_rate

    # ---------------- VALIDATION ----------------

    def _require_party(self, party_id: str, role: str) -> Party:
        party = self.dataset.find_party(party_id)
        if party is None or party.role != role:
            raise DocumentValidationError(f"Please select a {role}")
        return party

    def _validate_units(self, units: List[LineUnit]) -> None:
        if not units:
            raise DocumentValidationError("Add at least one cage")
        if len(units) > config.MAX_LINE_UNITS:
            raise DocumentValidationError(f"A delivery holds at most {config.MAX_LINE_UNITS} cages")

        seen = set()
        for unit in units:
            if unit.count <= 0 or unit.weight <= 0:
                raise DocumentValidationError(f"Cage {unit.sequence_no} needs a bird count and a weight")
            if unit.sequence_no in seen:
                raise DocumentValidationError(f"Cage {unit.sequence_no} is entered twice")
            seen.add(unit.sequence_no)

    def _validate_lines(self, lines: List[InvoiceLine]) -> None:
        if not lines:
            raise DocumentValidationError("Add at least one cage to the invoice")
        for line in lines:
            if line.count <= 0 or line.weight <= 0:
                raise DocumentValidationError(f"Cage {line.sequence_no} needs a bird count and a weight")
            if line.rate <= 0:
                raise DocumentValidationError(f"Cage {line.sequence_no} needs a rate")

    # ---------------- LEDGER POSTING ----------------

    def _posted_amount(self, reference_id: str) -> float:
        """What the ledger already holds for a document, excluding payments."""
        return sum(
            signed_amount(entry.kind, entry.amount)
            for entry in self.dataset.ledger_entries
            if entry.reference_id == reference_id
            and entry.kind in (LedgerKind.PURCHASE, LedgerKind.SALE, LedgerKind.ADJUSTMENT)
        )

    def _is_posted(self, reference_id: str, kind: LedgerKind) -> bool:
        return any(
            entry.reference_id == reference_id and entry.kind == kind
            for entry in self.dataset.ledger_entries
        )

    def _record_cash(
        self,
        party: Party,
        amount: float,
        method: str,
        description: str,
        entry_date: Optional[date] = None,
    ) -> Optional[CashFlowEntry]:
        """Cash book line for money received from customers or paid to vendors."""
        if amount <= 0:
            return None

        direction = "income" if party.role == "customer" else "expense"
        last = self.dataset.cash_flow[-1] if self.dataset.cash_flow else None
        cash_balance = last.cash_balance if last else 0.0
        online_balance = last.online_balance if last else 0.0
        delta = amount if direction == "income" else -amount
        if method == "online":
            online_balance += delta
        else:
            cash_balance += delta

        entry = CashFlowEntry(
            date=entry_date or date.today(),
            direction=direction,
            category="sales" if direction == "income" else "purchases",
            amount=amount,
            method=method,
            description=description,
            cash_balance=cash_balance,
            online_balance=online_balance,
        )
        self.dataset.cash_flow.append(entry)
        return entry

    def _append_entry(
        self,
        party_id: str,
        kind: LedgerKind,
        amount: float,
        paid_now: float = 0.0,
        method: str = "cash",
        reference_id: Optional[str] = None,
        entry_date: Optional[date] = None,
        description: str = "",
        amends_entry_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """
        Append a ledger entry (and its cash line) and save.

        Returns None when the save failed; the entry is then rolled back.
        """
        party = self.dataset.find_party(party_id)
        entry = self.ledger.record(
            party_id,
            kind,
            amount,
            paid_now=paid_now,
            reference_id=reference_id,
            date=entry_date,
            description=description,
            amends_entry_id=amends_entry_id,
        )

        moved = paid_now if kind not in (LedgerKind.PAYMENT, LedgerKind.ADVANCE) else amount
        cash = self._record_cash(party, moved, method, description, entry.date)

        def undo():
            self.ledger.remove(entry)
            if cash is not None:
                self.dataset.cash_flow.remove(cash)

        if not self._persist(undo):
            logger.error(f"Ledger entry for {party.name} could not be saved and was dropped")
            return None
        return entry

    def _reconcile(self, party_id: str, reference_id: str, amount: float, description: str) -> Optional[LedgerEntry]:
        """Post an adjustment when a posted document's amount has changed."""
        delta = amount - self._posted_amount(reference_id)
        if abs(delta) < 0.005:
            return None
        return self._append_entry(
            party_id,
            LedgerKind.ADJUSTMENT,
            delta,
            reference_id=reference_id,
            description=description,
        )

    # ---------------- DELIVERY BILLING ----------------

    def _check_billable(self, dc: DeliveryDocument, lines: List[InvoiceLine], invoice_id: Optional[str] = None) -> None:
        """Every line must be a cage of ``dc`` not billed by another invoice."""
        for line in lines:
            unit = dc.find_unit(line.sequence_no)
            if unit is None:
                raise DocumentValidationError(f"Cage {line.sequence_no} is not on DC {dc.number}")
            if unit.billed and (invoice_id is None or unit.invoice_id != invoice_id):
                raise DocumentValidationError(f"Cage {line.sequence_no} of DC {dc.number} is already billed")

    def _bill_units(self, invoice: Invoice, dc: DeliveryDocument) -> Callable[[], None]:
        """
        Mark the cages of ``dc`` billed exactly as the invoice lines say and
        recompute the weight loss.

        Returns:
            A function putting the previous marks and weight loss back
        """
        marks = [(unit, unit.billed, unit.invoice_id) for unit in dc.units]
        previous_loss = invoice.weight_loss

        wanted = {line.sequence_no for line in invoice.lines}
        for unit in dc.units:
            if unit.sequence_no in wanted:
                unit.billed, unit.invoice_id = True, invoice.id
            elif unit.invoice_id == invoice.id:
                unit.billed, unit.invoice_id = False, None

        original_weight = sum(unit.weight for unit in dc.units if unit.sequence_no in wanted)
        invoice.weight_loss = max(0.0, original_weight - invoice.total_weight)

        def restore():
            for unit, billed, invoice_id in marks:
                unit.billed, unit.invoice_id = billed, invoice_id
            invoice.weight_loss = previous_loss

        return restore

    def _source_delivery(self, invoice: Invoice) -> Optional[DeliveryDocument]:
        """The delivery an invoice bills from, if it still exists."""
        if not invoice.delivery_id:
            return None
        return self.dataset.find_delivery(invoice.delivery_id)

    # ---------------- DELIVERY DOCUMENTS ----------------

    def create_delivery(
        self,
        vendor_id: str,
        doc_date: date,
        units: List[LineUnit],
        purchase_rate: Optional[float] = None,
        paid_now: float = 0.0,
        method: str = "cash",
        manual_weighing: bool = False,
    ) -> CommitResult:
        """
        Commit a new delivery and post the purchase to the vendor's ledger.

        Without a purchase rate the vendor's latest quoted rate is used.
        """
        doc_date = calendar_date(doc_date)
        try:
            vendor = self._require_party(vendor_id, "vendor")
            if purchase_rate is None:
                purchase_rate = self.dataset.settings.latest_vendor_rate(vendor.name)
            if not purchase_rate or purchase_rate <= 0:
                raise DocumentValidationError("Enter the purchase rate")
            if paid_now < 0:
                raise DocumentValidationError("Paid amount cannot be negative")
            if method not in PAYMENT_METHODS:
                raise DocumentValidationError(f"Unknown payment method: {method}")
            self._validate_units(units)
        except DocumentValidationError as e:
            return CommitResult.failed(str(e))

        dc = DeliveryDocument(
            number=number_for_delivery(self.dataset, vendor, doc_date),
            date=doc_date,
            vendor_id=vendor.id,
            vendor_name=vendor.name,
            purchase_rate=purchase_rate,
            units=[unit.model_copy() for unit in units],
            manual_weighing=manual_weighing,
        )
        self.dataset.delivery_documents.append(dc)
        if not self._persist(lambda: self.dataset.delivery_documents.remove(dc)):
            return CommitResult.failed(f"Delivery was not saved. {SAVE_FAILED}")

        logger.info(f"Delivery {dc.number} saved: {dc.total_count} birds, {dc.total_weight:.2f} kg")
        return self._post_delivery(dc, paid_now, method)

    def _post_delivery(self, dc: DeliveryDocument, paid_now: float = 0.0, method: str = "cash") -> CommitResult:
        if self._is_posted(dc.id, LedgerKind.PURCHASE):
            return CommitResult(success=True, document=dc)

        entry = self._append_entry(
            dc.vendor_id,
            LedgerKind.PURCHASE,
            dc.amount,
            paid_now=paid_now,
            method=method,
            reference_id=dc.id,
            entry_date=dc.date,
            description=f"DC {dc.number} - {dc.total_count} birds, {dc.total_weight:g}kg",
        )
        if entry is None:
            return CommitResult(
                success=False,
                document=dc,
                error=f"Delivery {dc.number} was saved but its ledger entry was not. "
                      f"Confirm the delivery to post it again. {SAVE_FAILED}",
            )
        return CommitResult(success=True, document=dc, ledger_entry=entry)

    def update_delivery_units(self, delivery_id: str, units: List[LineUnit]) -> CommitResult:
        """Replace the cages of an unconfirmed delivery and re-post the difference."""
        dc = self.dataset.find_delivery(delivery_id)
        try:
            if dc is None:
                raise DocumentValidationError(f"Unknown delivery: {delivery_id}")
            if dc.confirmed:
                raise DocumentValidationError(f"Delivery {dc.number} is confirmed and cannot be edited")
            self._validate_units(units)
        except DocumentValidationError as e:
            return CommitResult.failed(str(e))

        previous_units, previous_updated = dc.units, dc.updated_at
        dc.units = [unit.model_copy() for unit in units]
        dc.updated_at = now()

        def undo():
            dc.units, dc.updated_at = previous_units, previous_updated

        if not self._persist(undo):
            return CommitResult.failed(f"Delivery {dc.number} was not updated. {SAVE_FAILED}")

        entry = None
        if self._is_posted(dc.id, LedgerKind.PURCHASE):
            entry = self._reconcile(dc.vendor_id, dc.id, dc.amount, f"DC {dc.number} revised")
        return CommitResult(success=True, document=dc, ledger_entry=entry)

    def confirm_delivery(self, delivery_id: str) -> CommitResult:
        """
        Confirm a delivery. Confirming twice changes nothing.

        A delivery whose purchase never reached the ledger is posted now.
        """
        dc = self.dataset.find_delivery(delivery_id)
        if dc is None:
            return CommitResult.failed(f"Unknown delivery: {delivery_id}")
        if dc.confirmed:
            return CommitResult(success=True, document=dc)

        dc.confirm()

        def undo():
            # rollback of a failed commit, not a normal transition
            dc.confirmed = False

        if not self._persist(undo):
            return CommitResult.failed(f"Delivery {dc.number} was not confirmed. {SAVE_FAILED}")

        if not self._is_posted(dc.id, LedgerKind.PURCHASE):
            return self._post_delivery(dc)
        entry = self._reconcile(dc.vendor_id, dc.id, dc.amount, f"DC {dc.number} revised")
        return CommitResult(success=True, document=dc, ledger_entry=entry)

    def delete_delivery(self, delivery_id: str) -> bool:
        """Remove a delivery. Its ledger entries stay as they are."""
        dc = self.dataset.find_delivery(delivery_id)
        if dc is None:
            return False

        index = self.dataset.delivery_documents.index(dc)
        self.dataset.delivery_documents.remove(dc)
        if not self._persist(lambda: self.dataset.delivery_documents.insert(index, dc)):
            return False

        if self._is_posted(dc.id, LedgerKind.PURCHASE):
            logger.warning(f"Deleted delivery {dc.number}; its ledger entries were not reversed")
        return True

    # ---------------- INVOICES ----------------

    def create_invoice(
        self,
        customer_id: str,
        lines: List[InvoiceLine],
        invoice_date: Optional[date] = None,
        delivery_id: Optional[str] = None,
        additional_charges: float = 0.0,
        tax_rate_percent: Optional[float] = None,
    ) -> CommitResult:
        """
        Commit a draft invoice.

        Lines billed out of a delivery mark the matching cages billed, and
        any weight missing against those cages is kept as weight loss.
        Drafts do not touch the ledger until confirmed.
        """
        invoice_date = calendar_date(invoice_date or date.today())
        dc = None
        try:
            customer = self._require_party(customer_id, "customer")
            self._validate_lines(lines)
            if additional_charges < 0:
                raise DocumentValidationError("Additional charges cannot be negative")

            if delivery_id:
                dc = self.dataset.find_delivery(delivery_id)
                if dc is None:
                    raise DocumentValidationError(f"Unknown delivery: {delivery_id}")
                self._check_billable(dc, lines)
        except DocumentValidationError as e:
            return CommitResult.failed(str(e))

        if tax_rate_percent is None:
            tax_rate_percent = self.dataset.settings.default_tax_rate_percent

        invoice = Invoice(
            number=number_for_invoice(self.dataset, customer, invoice_date),
            date=invoice_date,
            customer_id=customer.id,
            customer_name=customer.name,
            delivery_id=dc.id if dc else None,
            lines=[line.model_copy() for line in lines],
            tax_rate_percent=tax_rate_percent,
            additional_charges=additional_charges,
            due_date=invoice_date + timedelta(days=config.INVOICE_DUE_DAYS),
        )

        restore_marks = self._bill_units(invoice, dc) if dc is not None else None
        self.dataset.invoices.append(invoice)

        def undo():
            self.dataset.invoices.remove(invoice)
            if restore_marks is not None:
                restore_marks()

        if not self._persist(undo):
            return CommitResult.failed(f"Invoice was not saved. {SAVE_FAILED}")

        logger.info(f"Invoice {invoice.number} drafted for {customer.name}: {invoice.total:.2f}")
        return CommitResult(success=True, document=invoice)

    def invoice_from_delivery(
        self,
        customer_id: str,
        delivery_id: str,
        sequence_numbers: Optional[List[int]] = None,
        rate: Optional[float] = None,
        invoice_date: Optional[date] = None,
    ) -> CommitResult:
        """Draft an invoice for unbilled cages of a delivery (all of them by default)."""
        dc = self.dataset.find_delivery(delivery_id)
        if dc is None:
            return CommitResult.failed(f"Unknown delivery: {delivery_id}")

        units = dc.unbilled_units()
        if sequence_numbers is not None:
            wanted = set(sequence_numbers)
            units = [unit for unit in units if unit.sequence_no in wanted]
        if not units:
            return CommitResult.failed(f"DC {dc.number} has no unbilled cages to invoice")

        lines = [
            InvoiceLine(
                sequence_no=unit.sequence_no,
                count=unit.count,
                weight=unit.weight,
                rate=unit.rate or rate or 0.0,
            )
            for unit in units
        ]
        return self.create_invoice(customer_id, lines, invoice_date or dc.date, delivery_id=dc.id)

    def update_invoice(
        self,
        invoice_id: str,
        lines: Optional[List[InvoiceLine]] = None,
        additional_charges: Optional[float] = None,
    ) -> CommitResult:
        """
        Revise an invoice and bump its version.

        A confirmed invoice whose total changed gets an adjustment entry;
        the original sale entry is left as it was.
        """
        invoice = self.dataset.find_invoice(invoice_id)
        dc = None
        try:
            if invoice is None:
                raise DocumentValidationError(f"Unknown invoice: {invoice_id}")
            if lines is not None:
                self._validate_lines(lines)
                dc = self._source_delivery(invoice)
                if dc is not None:
                    self._check_billable(dc, lines, invoice.id)
            if additional_charges is not None and additional_charges < 0:
                raise DocumentValidationError("Additional charges cannot be negative")
        except DocumentValidationError as e:
            return CommitResult.failed(str(e))

        previous = invoice.model_copy()
        if lines is not None:
            invoice.lines = [line.model_copy() for line in lines]
        if additional_charges is not None:
            invoice.additional_charges = additional_charges
        invoice.version = next_version(invoice.version)
        invoice.updated_at = now()
        invoice.settle_status(date.today())
        restore_marks = self._bill_units(invoice, dc) if dc is not None else None

        def undo():
            if restore_marks is not None:
                restore_marks()
            for field in ("lines", "additional_charges", "version", "updated_at", "status"):
                setattr(invoice, field, getattr(previous, field))

        if not self._persist(undo):
            return CommitResult.failed(f"Invoice {invoice.number} was not updated. {SAVE_FAILED}")

        entry = None
        if invoice.is_posted():
            entry = self._reconcile(
                invoice.customer_id, invoice.id, invoice.total, f"Invoice {invoice.number} v{invoice.version}"
            )
        return CommitResult(success=True, document=invoice, ledger_entry=entry)

    def confirm_invoice(self, invoice_id: str, paid_now: float = 0.0, method: str = "cash") -> CommitResult:
        """
        Confirm a draft invoice and post the sale. Confirming twice changes nothing.
        """
        invoice = self.dataset.find_invoice(invoice_id)
        if invoice is None:
            return CommitResult.failed(f"Unknown invoice: {invoice_id}")
        if invoice.is_posted():
            return CommitResult(success=True, document=invoice)
        if paid_now < 0:
            return CommitResult.failed("Paid amount cannot be negative")
        if method not in PAYMENT_METHODS:
            return CommitResult.failed(f"Unknown payment method: {method}")

        previous_status, previous_paid = invoice.status, invoice.paid_amount
        invoice.status = InvoiceStatus.CONFIRMED
        invoice.paid_amount += paid_now
        invoice.settle_status(date.today())
        invoice.updated_at = now()

        def undo():
            invoice.status, invoice.paid_amount = previous_status, previous_paid

        if not self._persist(undo):
            return CommitResult.failed(f"Invoice {invoice.number} was not confirmed. {SAVE_FAILED}")

        entry = self._append_entry(
            invoice.customer_id,
            LedgerKind.SALE,
            invoice.total,
            paid_now=paid_now,
            method=method,
            reference_id=invoice.id,
            entry_date=invoice.date,
            description=f"Invoice {invoice.number}",
        )
        if entry is None:
            return CommitResult(
                success=False,
                document=invoice,
                error=f"Invoice {invoice.number} was confirmed but its ledger entry was not saved. {SAVE_FAILED}",
            )
        return CommitResult(success=True, document=invoice, ledger_entry=entry)

    def record_invoice_payment(self, invoice_id: str, amount: float, method: str = "cash") -> CommitResult:
        """Take a payment against a confirmed invoice."""
        invoice = self.dataset.find_invoice(invoice_id)
        if invoice is None:
            return CommitResult.failed(f"Unknown invoice: {invoice_id}")
        if not invoice.is_posted():
            return CommitResult.failed(f"Confirm invoice {invoice.number} before taking payments")
        if amount <= 0:
            return CommitResult.failed("Payment amount must be positive")
        if method not in PAYMENT_METHODS:
            return CommitResult.failed(f"Unknown payment method: {method}")

        previous_status, previous_paid = invoice.status, invoice.paid_amount
        invoice.paid_amount += amount
        invoice.settle_status(date.today())

        def undo():
            invoice.status, invoice.paid_amount = previous_status, previous_paid

        if not self._persist(undo):
            return CommitResult.failed(f"Payment was not saved. {SAVE_FAILED}")

        entry = self._append_entry(
            invoice.customer_id,
            LedgerKind.PAYMENT,
            amount,
            method=method,
            reference_id=invoice.id,
            description=f"Payment for invoice {invoice.number}",
        )
        if entry is None:
            return CommitResult(success=False, document=invoice, error=f"Payment ledger entry was not saved. {SAVE_FAILED}")
        return CommitResult(success=True, document=invoice, ledger_entry=entry)

    def refresh_overdue(self, today: Optional[date] = None) -> List[Invoice]:
        """Re-derive the status of posted invoices; returns those now overdue."""
        today = today or date.today()
        changed = False
        for invoice in self.dataset.invoices:
            before = invoice.status
            if invoice.settle_status(today) != before:
                changed = True

        if changed:
            self.save()
        return [invoice for invoice in self.dataset.invoices if invoice.status == InvoiceStatus.OVERDUE]

    def delete_invoice(self, invoice_id: str) -> bool:
        """Remove an invoice and free its cages. Its ledger entries stay as they are."""
        invoice = self.dataset.find_invoice(invoice_id)
        if invoice is None:
            return False

        freed = [
            unit
            for dc in self.dataset.delivery_documents
            for unit in dc.units
            if unit.invoice_id == invoice.id
        ]
        index = self.dataset.invoices.index(invoice)
        self.dataset.invoices.remove(invoice)
        for unit in freed:
            unit.billed = False
            unit.invoice_id = None

        def undo():
            self.dataset.invoices.insert(index, invoice)
            for unit in freed:
                unit.billed = True
                unit.invoice_id = invoice.id

        if not self._persist(undo):
            return False

        if invoice.is_posted():
            logger.warning(f"Deleted invoice {invoice.number}; its ledger entries were not reversed")
        return True

    # ---------------- PAYMENTS ----------------

    def record_payment(
        self,
        party_id: str,
        amount: float,
        method: str = "cash",
        description: str = "",
        payment_date: Optional[date] = None,
    ) -> CommitResult:
        """Money received from a customer or paid to a vendor, on account."""
        return self._payment(LedgerKind.PAYMENT, party_id, amount, method, description or "Payment", payment_date)

    def record_advance(
        self,
        party_id: str,
        amount: float,
        method: str = "cash",
        description: str = "",
        payment_date: Optional[date] = None,
    ) -> CommitResult:
        """Prepayment ahead of any document."""
        return self._payment(LedgerKind.ADVANCE, party_id, amount, method, description or "Advance", payment_date)

    def _payment(
        self,
        kind: LedgerKind,
        party_id: str,
        amount: float,
        method: str,
        description: str,
        payment_date: Optional[date],
    ) -> CommitResult:
        if self.dataset.find_party(party_id) is None:
            return CommitResult.failed(f"Unknown party: {party_id}")
        if amount <= 0:
            return CommitResult.failed(f"{kind.value.capitalize()} amount must be positive")
        if method not in PAYMENT_METHODS:
            return CommitResult.failed(f"Unknown payment method: {method}")

        entry = self._append_entry(party_id, kind, amount, method=method, entry_date=payment_date, description=description)
        if entry is None:
            return CommitResult.failed(f"{kind.value.capitalize()} was not saved. {SAVE_FAILED}")
        return CommitResult(success=True, ledger_entry=entry)

    def amend_entry(self, entry_id: str, additional_payment: float, method: str = "cash") -> CommitResult:
        """
        Record a further payment against a ledger entry.

        The original entry is never rewritten. When it belongs to an invoice,
        the invoice's paid amount follows.
        """
        original = self.dataset.find_ledger_entry(entry_id)
        if original is None:
            return CommitResult.failed(f"Unknown ledger entry: {entry_id}")
        if method not in PAYMENT_METHODS:
            return CommitResult.failed(f"Unknown payment method: {method}")

        try:
            entry = self.ledger.amend(entry_id, additional_payment)
        except LedgerError as e:
            return CommitResult.failed(str(e))

        party = self.dataset.find_party(entry.party_id)
        cash = self._record_cash(party, additional_payment, method, entry.description, entry.date)
        invoice = self.dataset.find_invoice(original.reference_id) if original.reference_id else None
        previous = (invoice.paid_amount, invoice.status) if invoice else None
        if invoice is not None:
            invoice.paid_amount += additional_payment
            invoice.settle_status(date.today())

        def undo():
            self.ledger.remove(entry)
            if cash is not None:
                self.dataset.cash_flow.remove(cash)
            if invoice is not None:
                invoice.paid_amount, invoice.status = previous

        if not self._persist(undo):
            return CommitResult.failed(f"Payment was not saved. {SAVE_FAILED}")
        return CommitResult(success=True, document=invoice, ledger_entry=entry)

    def statement(self, party_id: str, start: Optional[date] = None, end: Optional[date] = None) -> PartyStatement:
        return self.ledger.statement(party_id, start, end)

    # ---------------- FAST INVOICING ----------------

    def fast_invoices(
        self,
        text: str,
        rates: Dict[str, float],
        invoice_date: Optional[date] = None,
    ) -> FastInvoiceReport:
        """
        Create and confirm one invoice per party group in pasted text.

        Args:
            text: Party headers followed by cage lines
            rates: Per-kg rate by party name as it appears in the text;
                a rate on an individual cage line wins over it

        Returns:
            FastInvoiceReport listing the invoices created and every group
            or line that was skipped
        """
        parsed = parse_bulk_text(text, allow_rate=True)
        report = FastInvoiceReport(skipped_lines=parsed.skipped)
        lowered = {name.strip().lower(): rate for name, rate in rates.items()}

        for group in parsed.groups:
            rate = lowered.get(group.party_name.lower())
            if not group.records:
                report.messages.append(f"Skipped {group.party_name}: no cage lines")
                continue
            if not rate and not all(record.rate for record in group.records):
                report.messages.append(f"Skipped {group.party_name}: no rate specified")
                continue

            customer, created = self.find_or_create_customer(group.party_name, default_rate=rate)
            if created:
                report.created_customers.append(customer.name)
                report.messages.append(f"Created new customer: {customer.name}")

            lines = [
                InvoiceLine(
                    sequence_no=record.sequence_no,
                    count=record.count,
                    weight=record.weight,
                    rate=record.rate or rate,
                )
                for record in group.records
            ]
            result = self.create_invoice(customer.id, lines, invoice_date)
            if result.success:
                result = self.confirm_invoice(result.document.id)

            if not result.success:
                report.messages.append(f"Failed {group.party_name}: {result.error}")
                continue

            invoice = result.document
            report.invoices.append(invoice)
            report.messages.append(f"Invoice {invoice.number} created for {customer.name} - {invoice.total:.2f}")

        if parsed.skipped:
            report.messages.append(f"{len(parsed.skipped)} line(s) could not be read")
        logger.info(f"Fast invoicing created {len(report.invoices)} invoice(s) from {len(parsed.groups)} group(s)")
        return report

    # ---------------- AUTO-SAVE ----------------

    def autosave_delivery(self, draft: DeliveryDocument) -> bool:
        """
        Flush the cages of a delivery being edited.

        Drafts that were never committed are skipped, as are confirmed
        deliveries. Ledger amounts catch up on the next explicit update or
        confirmation.
        """
        dc = self.dataset.find_delivery(draft.id)
        if dc is None or dc.confirmed:
            logger.debug("Auto-save skipped: delivery draft not committed yet")
            return False

        dc.units = [unit.model_copy() for unit in draft.units]
        dc.manual_weighing = draft.manual_weighing
        dc.updated_at = now()
        if not self.save():
            logger.warning(f"Auto-save of delivery {dc.number} failed")
            return False
        return True

    def autosave_invoice(self, draft: Invoice) -> bool:
        """Flush the lines of a draft invoice; committed drafts only."""
        invoice = self.dataset.find_invoice(draft.id)
        if invoice is None or invoice.is_posted():
            logger.debug("Auto-save skipped: invoice draft not committed yet")
            return False

        dc = self._source_delivery(invoice)
        if dc is not None:
            try:
                self._check_billable(dc, draft.lines, invoice.id)
            except DocumentValidationError as e:
                logger.warning(f"Auto-save of invoice {invoice.number} skipped: {e}")
                return False

        invoice.lines = [line.model_copy() for line in draft.lines]
        invoice.additional_charges = draft.additional_charges
        if dc is not None:
            self._bill_units(invoice, dc)
        invoice.updated_at = now()
        if not self.save():
            logger.warning(f"Auto-save of invoice {invoice.number} failed")
            return False
        return True

    def start_autosave(
        self,
        current_draft: Callable[[], Optional[Draft]],
        interval_minutes: Optional[float] = None,
    ) -> None:
        """
        Flush whatever ``current_draft()`` returns on every tick.

        Uses the interval from settings unless one is given.
        """
        if interval_minutes is None:
            interval_minutes = self.dataset.settings.auto_save_interval_minutes

        def flush():
            draft = current_draft()
            if isinstance(draft, DeliveryDocument):
                self.autosave_delivery(draft)
            elif isinstance(draft, Invoice):
                self.autosave_invoice(draft)

        self.scheduler.start(flush, interval_minutes)

    def stop_autosave(self) -> None:
        self.scheduler.stop()

    # ---------------- EXPORT / IMPORT ----------------

    def export_snapshot(self) -> str:
        return self.store.export_snapshot(self.dataset)

    def import_snapshot(self, text: str, mode: str) -> bool:
        """Import an exported blob ("overwrite" or "merge") and reload."""
        self.save()
        if not self.store.import_snapshot(text, mode):
            return False
        self._reload()
        return True

    def create_backup(self) -> str:
        backup = self.store.create_backup(self.dataset)
        self.save()
        return backup

    def restore_backup(self, text: str) -> bool:
        if not self.store.restore_backup(text):
            return False
        self._reload()
        return True


def format_result_json(result: CommitResult) -> str:
    """Format a commit result as JSON for display."""
    return dict_to_json_string(result.model_dump(mode="json", by_alias=True))
