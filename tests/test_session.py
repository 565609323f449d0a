"""
End-to-end tests for the ERP session: commit, numbering and ledger posting.
"""

import asyncio
import json
import pytest
from datetime import date, datetime
from typing import Optional

from poultry_erp.main import ErpSession, format_result_json
from poultry_erp.schemas import InvoiceLine, InvoiceStatus, LedgerKind, LineUnit
from poultry_erp.schemas.invoice import next_version
from poultry_erp.store import EntityStore, MemoryStorage


MAY_3 = date(2024, 5, 3)


class FlakyStorage(MemoryStorage):
    """Accepts ``remaining`` writes, then fails every write. None means no limit."""

    def __init__(self, remaining: Optional[int] = None):
        super().__init__()
        self.remaining = remaining

    def write(self, text: str) -> None:
        if self.remaining is not None:
            if self.remaining <= 0:
                raise OSError("disk full")
            self.remaining -= 1
        super().write(text)


@pytest.fixture
def storage():
    return FlakyStorage()


@pytest.fixture
def session(storage):
    return ErpSession(EntityStore(storage))


@pytest.fixture
def vendor(session):
    return session.add_party("Suguna", "vendor")


@pytest.fixture
def customer(session):
    return session.add_party("Ravi Traders", "customer")


@pytest.fixture
def cages():
    return [
        LineUnit(sequence_no=1, count=10, weight=20.0),
        LineUnit(sequence_no=2, count=12, weight=25.0),
    ]


@pytest.fixture
def delivery(session, vendor, cages):
    result = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)
    assert result.success
    return result.document


def reload(storage):
    return EntityStore(storage).load()


class TestDeliveries:
    """Committing deliveries and posting purchases."""

    def test_two_deliveries_same_day(self, session, vendor, cages):
        first = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)
        second = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)

        assert first.document.number == "sgn030524"
        assert second.document.number == "sgn030524a"
        assert first.ledger_entry.balance == 4500.0
        assert second.ledger_entry.balance == 9000.0
        assert vendor.balance == 9000.0

    def test_delivery_is_persisted_with_its_entry(self, storage, delivery):
        stored = reload(storage)
        assert stored.delivery_documents[0].number == delivery.number
        assert stored.ledger_entries[0].reference_id == delivery.id
        assert stored.ledger_entries[0].kind == LedgerKind.PURCHASE

    def test_paid_now_reduces_balance_and_hits_cash_book(self, session, vendor, cages):
        result = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0, paid_now=1000.0)

        assert result.ledger_entry.paid == 1000.0
        assert result.ledger_entry.balance == 3500.0
        cash = session.dataset.cash_flow[-1]
        assert cash.direction == "expense"
        assert cash.cash_balance == -1000.0

    def test_vendor_rate_fallback(self, session, vendor, cages):
        session.set_vendor_rate("Suguna", 98.0, MAY_3)
        result = session.create_delivery(vendor.id, MAY_3, cages)

        assert result.success
        assert result.document.purchase_rate == 98.0

    def test_confirm_is_idempotent(self, session, delivery):
        first = session.confirm_delivery(delivery.id)
        second = session.confirm_delivery(delivery.id)

        assert first.success and second.success
        assert delivery.confirmed
        assert len(session.dataset.ledger_entries) == 1

    def test_edit_unconfirmed_delivery_posts_difference(self, session, vendor, delivery):
        units = [LineUnit(sequence_no=1, count=10, weight=25.0), LineUnit(sequence_no=2, count=12, weight=25.0)]
        result = session.update_delivery_units(delivery.id, units)

        assert result.success
        assert result.ledger_entry.kind == LedgerKind.ADJUSTMENT
        assert result.ledger_entry.amount == 500.0
        assert vendor.balance == 5000.0

    def test_confirmed_delivery_cannot_be_edited(self, session, delivery, cages):
        session.confirm_delivery(delivery.id)
        result = session.update_delivery_units(delivery.id, cages[:1])

        assert not result.success
        assert "cannot be edited" in result.error

    def test_delete_delivery_keeps_ledger(self, session, delivery):
        assert session.delete_delivery(delivery.id)
        assert session.dataset.delivery_documents == []
        assert len(session.dataset.ledger_entries) == 1


class TestValidation:
    """Rejected drafts are never persisted."""

    def test_no_cages(self, session, vendor, storage):
        result = session.create_delivery(vendor.id, MAY_3, [], purchase_rate=100.0)
        assert not result.success
        assert "at least one cage" in result.error
        assert storage.text is None

    def test_too_many_cages(self, session, vendor):
        units = [LineUnit(sequence_no=i, count=1, weight=1.0) for i in range(1, 62)]
        result = session.create_delivery(vendor.id, MAY_3, units, purchase_rate=100.0)
        assert "at most 60" in result.error

    def test_empty_cage(self, session, vendor):
        result = session.create_delivery(
            vendor.id, MAY_3, [LineUnit(sequence_no=1, count=0, weight=5.0)], purchase_rate=100.0
        )
        assert "bird count" in result.error

    def test_customer_is_not_a_vendor(self, session, customer, cages):
        result = session.create_delivery(customer.id, MAY_3, cages, purchase_rate=100.0)
        assert result.error == "Please select a vendor"

    def test_missing_rate(self, session, vendor, cages):
        result = session.create_delivery(vendor.id, MAY_3, cages)
        assert result.error == "Enter the purchase rate"

    def test_unknown_payment_method(self, session, vendor, cages):
        result = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0, paid_now=10.0, method="card")
        assert "payment method" in result.error
        assert session.dataset.delivery_documents == []


class TestPersistenceFailures:
    """Nothing reaches the ledger unless its document was saved."""

    def test_document_save_failure_creates_no_entry(self, cages):
        storage = FlakyStorage(remaining=0)
        session = ErpSession(EntityStore(storage))
        vendor = session.add_party("Suguna", "vendor")

        result = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)

        assert not result.success
        assert "not saved" in result.error
        assert session.dataset.delivery_documents == []
        assert session.dataset.ledger_entries == []
        assert vendor.balance == 0.0

    def test_ledger_save_failure_is_reported_and_recoverable(self, cages):
        storage = FlakyStorage(remaining=1)
        session = ErpSession(EntityStore(storage))
        vendor = session.add_party("Suguna", "vendor")

        result = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)

        assert not result.success
        assert result.document is not None
        assert session.dataset.ledger_entries == []
        assert vendor.balance == 0.0

        storage.remaining = None
        confirmed = session.confirm_delivery(result.document.id)
        assert confirmed.success
        assert confirmed.ledger_entry.amount == 4500.0
        assert vendor.balance == 4500.0


class TestInvoices:
    """Invoices drafted from deliveries, confirmed and paid."""

    def test_invoice_from_delivery_marks_cages_billed(self, session, customer, delivery):
        result = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0)
        invoice = result.document

        assert result.success
        assert invoice.number == "rt030524"
        assert invoice.subtotal == 5400.0
        assert invoice.tax == 972.0
        assert invoice.total == 6372.0
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.due_date == date(2024, 6, 2)
        assert all(u.billed and u.invoice_id == invoice.id for u in delivery.units)
        assert session.ledger.entries_for(customer.id) == []

    def test_cages_cannot_be_billed_twice(self, session, customer, delivery):
        session.invoice_from_delivery(customer.id, delivery.id, rate=120.0)
        again = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0)
        assert not again.success
        assert "no unbilled cages" in again.error

    def test_partial_billing(self, session, customer, delivery):
        result = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[2], rate=120.0)
        assert [line.sequence_no for line in result.document.lines] == [2]
        assert [u.sequence_no for u in delivery.unbilled_units()] == [1]

    def test_weight_loss_is_recorded(self, session, customer, delivery):
        lines = [InvoiceLine(sequence_no=1, count=10, weight=19.0, rate=120.0)]
        result = session.create_invoice(customer.id, lines, MAY_3, delivery_id=delivery.id)
        assert result.document.weight_loss == pytest.approx(1.0)

    def test_confirm_posts_sale_once(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0, invoice_date=date.today()).document

        first = session.confirm_invoice(invoice.id, paid_now=1000.0)
        second = session.confirm_invoice(invoice.id, paid_now=1000.0)

        assert first.ledger_entry.kind == LedgerKind.SALE
        assert first.ledger_entry.balance == pytest.approx(5372.0)
        assert second.ledger_entry is None
        assert invoice.status == InvoiceStatus.PARTIAL
        assert len(session.ledger.entries_for(customer.id)) == 1
        assert session.dataset.cash_flow[-1].direction == "income"

    def test_amend_settles_invoice(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        sale = session.confirm_invoice(invoice.id, paid_now=1000.0).ledger_entry

        result = session.amend_entry(sale.id, 5372.0, method="online")

        assert result.success
        assert result.ledger_entry.amends_entry_id == sale.id
        assert sale.paid == 1000.0
        assert invoice.status == InvoiceStatus.PAID
        assert customer.balance == pytest.approx(0.0)
        assert session.dataset.cash_flow[-1].online_balance == 5372.0

    def test_update_posted_invoice_adds_adjustment(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        session.confirm_invoice(invoice.id)

        result = session.update_invoice(invoice.id, additional_charges=100.0)

        assert invoice.version == "1.1"
        assert result.ledger_entry.kind == LedgerKind.ADJUSTMENT
        assert result.ledger_entry.amount == pytest.approx(100.0)
        assert customer.balance == pytest.approx(6472.0)

    def test_update_draft_only_bumps_version(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        result = session.update_invoice(invoice.id, additional_charges=50.0)

        assert invoice.version == "1.1"
        assert result.ledger_entry is None
        assert session.ledger.entries_for(customer.id) == []

    def test_invoice_payment(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        assert not session.record_invoice_payment(invoice.id, 100.0).success

        session.confirm_invoice(invoice.id)
        result = session.record_invoice_payment(invoice.id, 6372.0)

        assert result.success
        assert invoice.status == InvoiceStatus.PAID
        assert customer.balance == pytest.approx(0.0)

    def test_overdue_refresh(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        session.confirm_invoice(invoice.id)

        assert session.refresh_overdue(today=date(2024, 5, 20)) == []
        overdue = session.refresh_overdue(today=date(2024, 7, 1))
        assert [i.id for i in overdue] == [invoice.id]

    def test_delete_invoice_frees_cages(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        assert session.delete_invoice(invoice.id)
        assert len(delivery.unbilled_units()) == 2


def test_next_version():
    assert next_version("1.0") == "1.1"
    assert next_version("1.9") == "2.0"
    with pytest.raises(ValueError):
        next_version("draft")


class TestPartiesAndPayments:
    def test_opening_balance_is_an_adjustment(self, session):
        party = session.add_party("Old Shop", "customer", opening_balance=250.0)
        entries = session.ledger.entries_for(party.id)

        assert entries[0].kind == LedgerKind.ADJUSTMENT
        assert party.balance == 250.0

    def test_vendor_payment(self, session, vendor, delivery):
        result = session.record_payment(vendor.id, 500.0)
        assert result.ledger_entry.balance == 4000.0
        assert session.dataset.cash_flow[-1].direction == "expense"

    def test_advance(self, session, customer):
        result = session.record_advance(customer.id, 300.0, method="online")
        assert result.success
        assert customer.advance == 300.0
        assert customer.balance == -300.0

    def test_payment_validation(self, session, customer):
        assert not session.record_payment(customer.id, 0).success
        assert not session.record_payment("missing", 10.0).success
        assert not session.record_payment(customer.id, 10.0, method="cheque").success

    def test_customer_matching(self, session, customer):
        assert session.match_customer("ravi traders") is customer
        assert session.match_customer("Ravi Traders Ltd") is customer
        assert session.match_customer("Krishna") is None

    def test_find_or_create_customer(self, session, customer):
        found, created = session.find_or_create_customer("Ravi Traders")
        assert found is customer and not created

        new, created = session.find_or_create_customer("Lakshmi Stores", default_rate=118.0)
        assert created
        assert new.default_rate == 118.0
        assert new in session.dataset.customers

    def test_add_party_validation(self, session):
        from poultry_erp.exceptions import DocumentValidationError

        with pytest.raises(DocumentValidationError):
            session.add_party("  ", "customer")
        with pytest.raises(DocumentValidationError):
            session.add_party("Somebody", "supplier")


class TestFastInvoices:
    def test_groups_become_confirmed_invoices(self, session, customer):
        text = (
            "Ravi Traders\n1 10 20.0\n2 12 25.0\n\n"
            "New Shop\n1 5 10.0 130\n"
            "No Rate Co\n1 5 10.0\n"
            "stray line"
        )
        report = session.fast_invoices(text, {"Ravi Traders": 120.0}, invoice_date=date.today())

        assert len(report.invoices) == 2
        ravi, new_shop = report.invoices
        assert ravi.customer_id == customer.id
        assert ravi.total == 6372.0
        assert ravi.status == InvoiceStatus.CONFIRMED
        assert new_shop.subtotal == 1300.0
        assert report.created_customers == ["New Shop"]
        assert "Skipped No Rate Co: no rate specified" in report.messages
        assert customer.balance == 6372.0

    def test_skipped_lines_are_reported(self, session):
        report = session.fast_invoices("1 10 20.0\nAcme\n1 x 2", {"Acme": 100.0})

        assert report.invoices == []
        assert {s.reason for s in report.skipped_lines} == {"no_active_header", "malformed_record"}
        assert "Skipped Acme: no cage lines" in report.messages


class TestAutoSave:
    def test_uncommitted_draft_is_skipped(self, session, vendor, cages, storage):
        from poultry_erp.schemas import DeliveryDocument

        draft = DeliveryDocument(
            date=MAY_3, vendor_id=vendor.id, vendor_name=vendor.name, purchase_rate=100.0, units=cages
        )
        assert session.autosave_delivery(draft) is False
        assert storage.text is None

    def test_committed_draft_is_flushed(self, session, storage, delivery):
        draft = delivery.model_copy(deep=True)
        draft.units.append(LineUnit(sequence_no=3, count=5, weight=10.0))

        assert session.autosave_delivery(draft)
        assert len(reload(storage).delivery_documents[0].units) == 3
        assert len(session.dataset.ledger_entries) == 1

    def test_confirmed_delivery_is_not_flushed(self, session, delivery):
        session.confirm_delivery(delivery.id)
        assert session.autosave_delivery(delivery.model_copy(deep=True)) is False

    def test_posted_invoice_is_not_flushed(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        assert session.autosave_invoice(invoice.model_copy(deep=True))

        session.confirm_invoice(invoice.id)
        assert session.autosave_invoice(invoice.model_copy(deep=True)) is False

    @pytest.mark.asyncio
    async def test_timer_flushes_current_draft(self, session, storage, delivery):
        draft = delivery.model_copy(deep=True)
        draft.units.append(LineUnit(sequence_no=3, count=5, weight=10.0))

        session.start_autosave(lambda: draft, interval_minutes=0.0005)
        await asyncio.sleep(0.2)
        session.stop_autosave()

        assert session.scheduler.ticks >= 1
        assert len(reload(storage).delivery_documents[0].units) == 3


class TestSnapshots:
    def test_open_recovers_from_corruption(self):
        session = ErpSession.open(EntityStore(MemoryStorage("{broken")))
        assert session.recovered_from_corruption
        assert session.dataset.invoices == []

    def test_export_import_round_trip(self, session, delivery):
        blob = session.export_snapshot()
        other = ErpSession(EntityStore(MemoryStorage()))

        assert other.import_snapshot(blob, "overwrite")
        assert other.dataset.delivery_documents[0].number == delivery.number
        vendor_id = delivery.vendor_id
        assert other.ledger.balance_of(vendor_id) == 4500.0

    def test_backup_and_restore(self, session, delivery):
        backup = session.create_backup()
        session.delete_delivery(delivery.id)

        assert session.restore_backup(backup)
        assert session.dataset.delivery_documents[0].id == delivery.id

    def test_close_saves(self, session, storage, customer):
        assert session.close()
        assert reload(storage).customers[0].name == "Ravi Traders"


def test_format_result_json(session, delivery):
    result = session.confirm_delivery(delivery.id)
    payload = json.loads(format_result_json(result))
    assert payload["success"] is True
    assert payload["document"]["number"] == "sgn030524"



class TestDocumentDates:
    """Timestamps passed as document dates count as their calendar day."""

    def test_datetime_deliveries_share_the_day(self, session, vendor, cages):
        first = session.create_delivery(vendor.id, datetime(2024, 5, 3), cages, purchase_rate=100.0)
        second = session.create_delivery(vendor.id, datetime(2024, 5, 3, 14, 30), cages, purchase_rate=100.0)
        third = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0)

        assert first.success and second.success and third.success
        assert [first.document.number, second.document.number, third.document.number] == [
            "sgn030524", "sgn030524a", "sgn030524b"
        ]
        assert second.document.date == MAY_3
        assert second.ledger_entry.date == MAY_3

    def test_datetime_invoice_date(self, session, customer):
        lines = [InvoiceLine(sequence_no=1, count=10, weight=20.0, rate=120.0)]
        first = session.create_invoice(customer.id, lines, datetime(2024, 5, 3, 9, 15))
        second = session.create_invoice(customer.id, lines, MAY_3)

        assert first.document.date == MAY_3
        assert first.document.due_date == date(2024, 6, 2)
        assert second.document.number == "rt030524a"


class TestInvoiceRevisions:
    """Revised lines keep the delivery's billing marks in step."""

    def test_moving_lines_rebills_cages(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[1], rate=120.0).document
        lines = [InvoiceLine(sequence_no=2, count=12, weight=24.0, rate=120.0)]

        result = session.update_invoice(invoice.id, lines=lines)

        assert result.success
        first, second = delivery.units
        assert not first.billed and first.invoice_id is None
        assert second.billed and second.invoice_id == invoice.id
        assert invoice.weight_loss == pytest.approx(1.0)

    def test_cage_not_on_delivery_is_rejected(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        lines = [InvoiceLine(sequence_no=9, count=5, weight=10.0, rate=120.0)]

        result = session.update_invoice(invoice.id, lines=lines)

        assert not result.success
        assert "not on DC" in result.error
        assert invoice.version == "1.0"
        assert all(u.invoice_id == invoice.id for u in delivery.units)

    def test_cage_billed_elsewhere_is_rejected(self, session, customer, delivery):
        first = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[1], rate=120.0).document
        second = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[2], rate=120.0).document
        lines = [InvoiceLine(sequence_no=2, count=12, weight=25.0, rate=120.0)]

        result = session.update_invoice(first.id, lines=lines)

        assert "already billed" in result.error
        assert delivery.find_unit(2).invoice_id == second.id

    def test_failed_save_restores_marks(self, cages):
        storage = FlakyStorage()
        session = ErpSession(EntityStore(storage))
        vendor = session.add_party("Suguna", "vendor")
        customer = session.add_party("Ravi Traders", "customer")
        dc = session.create_delivery(vendor.id, MAY_3, cages, purchase_rate=100.0).document
        invoice = session.invoice_from_delivery(customer.id, dc.id, sequence_numbers=[1], rate=120.0).document

        storage.remaining = 0
        lines = [InvoiceLine(sequence_no=2, count=12, weight=25.0, rate=120.0)]
        result = session.update_invoice(invoice.id, lines=lines)

        assert not result.success
        assert dc.find_unit(1).invoice_id == invoice.id
        assert not dc.find_unit(2).billed
        assert [line.sequence_no for line in invoice.lines] == [1]

    def test_autosave_rebills_cages(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[1], rate=120.0).document
        draft = invoice.model_copy(deep=True)
        draft.lines.append(InvoiceLine(sequence_no=2, count=12, weight=25.0, rate=120.0))

        assert session.autosave_invoice(draft)
        assert all(u.invoice_id == invoice.id for u in delivery.units)

    def test_autosave_rejects_foreign_cage(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, sequence_numbers=[1], rate=120.0).document
        draft = invoice.model_copy(deep=True)
        draft.lines.append(InvoiceLine(sequence_no=9, count=5, weight=10.0, rate=120.0))

        assert session.autosave_invoice(draft) is False
        assert len(invoice.lines) == 1

    def test_overdue_invoice_stays_overdue_after_part_payment(self, session, customer, delivery):
        invoice = session.invoice_from_delivery(customer.id, delivery.id, rate=120.0).document
        session.confirm_invoice(invoice.id)
        assert invoice.status == InvoiceStatus.OVERDUE

        session.record_invoice_payment(invoice.id, 100.0)
        assert invoice.status == InvoiceStatus.OVERDUE

        session.update_invoice(invoice.id, additional_charges=10.0)
        assert invoice.status == InvoiceStatus.OVERDUE


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
