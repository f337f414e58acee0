"""
Tests for pms_billing/services/invoice_service.py
Covers: create_invoice, query_invoices, get_invoice_by_id, get_invoice_for_print
"""
import pytest
from datetime import date, datetime
from decimal import Decimal
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from pms_billing.exceptions import BadRequestError, NotFoundError
from pms_billing.models.events import EventType
from pms_billing.models.ontology import FolioType, Invoice, InvoiceDetail
from pms_billing.models.schemas import (
    FolioCreate, InvoiceCreate, InvoiceFilter, InvoiceResponse, PageParams, PaymentCreate,
    RoomChargeCreate, ServiceChargeCreate
)
from pms_billing.services.invoice_service import InvoiceService


# ── helpers ──────────────────────────────────────────────────────────

@pytest.fixture
def invoices(db_session, clock, published):
    return InvoiceService(db_session, event_publisher=published.append, clock=clock)


@pytest.fixture
def charges(folio_service, master_folio, stay_detail, service, employee):
    room = folio_service.add_room_charge(master_folio.id, employee.id, RoomChargeCreate(
        stay_detail_id=stay_detail.id, amount=Decimal("500000")
    ))
    minibar = folio_service.add_service_charge(master_folio.id, employee.id, ServiceChargeCreate(
        service_id=service.id, quantity=2
    ))
    return room, minibar


def _invoice(invoices, folio, customer, transactions, employee, tax_id=None):
    return invoices.create_invoice(InvoiceCreate(
        guest_folio_id=folio.id,
        invoice_to_customer_id=customer.id,
        transaction_ids=[tx.id for tx in transactions],
        tax_id=tax_id
    ), employee.id)


# ── tests ────────────────────────────────────────────────────────────

class TestCreateInvoice:

    def test_total_from_transactions(self, invoices, db_session, master_folio, customer, charges,
                                     employee, published):
        invoice = _invoice(invoices, master_folio, customer, charges, employee, tax_id="91110000X")

        assert invoice.code == "INV2603140001"
        assert invoice.total_amount == Decimal("600000")
        assert invoice.invoice_date == datetime(2026, 3, 14, 2, 0)
        assert invoice.tax_id == "91110000X"
        assert [d.transaction_id for d in invoice.details] == [tx.id for tx in charges]
        assert published[-1].event_type == EventType.INVOICE_CREATED.value
        assert published[-1].data["total_amount"] == "600000.00"

    def test_codes_are_sequential(self, invoices, master_folio, customer, charges, employee):
        room, minibar = charges
        first = _invoice(invoices, master_folio, customer, [room], employee)
        second = _invoice(invoices, master_folio, customer, [minibar], employee)
        assert (first.code, second.code) == ("INV2603140001", "INV2603140002")

    def test_duplicate_ids_collapsed(self, invoices, master_folio, customer, charges, employee):
        room, _ = charges
        invoice = invoices.create_invoice(InvoiceCreate(
            guest_folio_id=master_folio.id,
            invoice_to_customer_id=customer.id,
            transaction_ids=[room.id, room.id]
        ), employee.id)
        assert invoice.total_amount == Decimal("500000")
        assert len(invoice.details) == 1

    def test_already_invoiced(self, invoices, db_session, master_folio, customer, charges, employee):
        room, minibar = charges
        _invoice(invoices, master_folio, customer, [room], employee)

        with pytest.raises(BadRequestError, match="已开票") as exc:
            _invoice(invoices, master_folio, customer, [room, minibar], employee)
        assert exc.value.context == {'transaction_ids': [room.id]}
        assert db_session.query(Invoice).count() == 1

    def test_rejects_credit_transactions(self, invoices, db_session, folio_service, master_folio, customer,
                                         payment_method, employee):
        payment = folio_service.add_payment(master_folio.id, employee.id, PaymentCreate(
            amount=Decimal("100000"), payment_method_id=payment_method.id
        ))
        with pytest.raises(BadRequestError, match="开票"):
            _invoice(invoices, master_folio, customer, [payment], employee)
        assert db_session.query(Invoice).count() == 0

    def test_rejects_void_transactions(self, invoices, folio_service, master_folio, customer, charges,
                                       employee):
        room, minibar = charges
        folio_service.void_transaction(room.id, employee.id, "换房")

        with pytest.raises(BadRequestError) as exc:
            _invoice(invoices, master_folio, customer, [room, minibar], employee)
        assert exc.value.context == {'transaction_ids': [room.id]}

    def test_rejects_other_folio_transactions(self, invoices, folio_service, master_folio, customer,
                                              charges, employee):
        other = folio_service.create_folio(FolioCreate(
            folio_type=FolioType.NON_RESIDENT, bill_to_customer_id=customer.id
        ))
        with pytest.raises(BadRequestError):
            _invoice(invoices, other, customer, charges, employee)

    def test_missing_folio(self, invoices, customer, employee):
        with pytest.raises(NotFoundError):
            invoices.create_invoice(InvoiceCreate(
                guest_folio_id=999, invoice_to_customer_id=customer.id, transaction_ids=[1]
            ), employee.id)

    def test_missing_customer(self, invoices, master_folio, charges, employee):
        with pytest.raises(BadRequestError, match="客户不存在"):
            invoices.create_invoice(InvoiceCreate(
                guest_folio_id=master_folio.id, invoice_to_customer_id=999,
                transaction_ids=[charges[0].id]
            ), employee.id)

    def test_requires_transactions(self, master_folio, customer):
        with pytest.raises(ValidationError):
            InvoiceCreate(guest_folio_id=master_folio.id, invoice_to_customer_id=customer.id,
                          transaction_ids=[])

    def test_store_rejects_second_detail_for_transaction(self, invoices, db_session, master_folio,
                                                         customer, charges, employee):
        room, _ = charges
        invoice = _invoice(invoices, master_folio, customer, [room], employee)

        db_session.add(InvoiceDetail(invoice_id=invoice.id, transaction_id=room.id))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestQueryAndDetail:

    def test_query_filters(self, invoices, folio_service, master_folio, customer, charges, employee):
        room, minibar = charges
        _invoice(invoices, master_folio, customer, [room], employee)
        _invoice(invoices, master_folio, customer, [minibar], employee)

        page = invoices.query_invoices(InvoiceFilter(guest_folio_id=master_folio.id),
                                       PageParams(sort_by="code", sort_type="asc", limit=1))
        assert [i.code for i in page["results"]] == ["INV2603140001"]
        assert page["meta"]["total_results"] == 2

        assert invoices.query_invoices(InvoiceFilter(code="INV2603140002"))["meta"]["total_results"] == 1
        assert invoices.query_invoices(InvoiceFilter(employee_id=999))["results"] == []

    def test_query_by_invoice_date(self, invoices, master_folio, customer, charges, employee):
        _invoice(invoices, master_folio, customer, charges, employee)

        same_day = InvoiceFilter(from_date=date(2026, 3, 14), to_date=date(2026, 3, 14))
        assert invoices.query_invoices(same_day)["meta"]["total_results"] == 1
        later = InvoiceFilter(from_date=date(2026, 3, 15))
        assert invoices.query_invoices(later)["meta"]["total_results"] == 0

    def test_query_default_order_newest_first(self, db_session, master_folio, customer, charges, employee,
                                              published):
        room, minibar = charges
        early = InvoiceService(db_session, published.append, clock=lambda: datetime(2026, 3, 14, 8, 0))
        late = InvoiceService(db_session, published.append, clock=lambda: datetime(2026, 3, 14, 9, 0))
        _invoice(early, master_folio, customer, [room], employee)
        _invoice(late, master_folio, customer, [minibar], employee)

        results = early.query_invoices()["results"]
        assert [i.invoice_date.hour for i in results] == [9, 8]

    def test_detail_breakdown(self, invoices, master_folio, customer, charges, employee):
        invoice = _invoice(invoices, master_folio, customer, charges, employee)

        detail = invoices.get_invoice_by_id(invoice.id)
        assert len(detail["transactions"]) == 2
        assert detail["breakdown"]["room_charges"] == Decimal("500000")
        assert detail["breakdown"]["service_charges"] == Decimal("100000")
        assert detail["breakdown"]["penalties"] == Decimal("0")
        assert "payments" not in detail["breakdown"]

        response = InvoiceResponse.model_validate(detail["invoice"])
        assert response.total_amount == Decimal("600000")

    def test_detail_missing(self, invoices):
        with pytest.raises(NotFoundError, match="发票不存在"):
            invoices.get_invoice_by_id(999)

    def test_print_data(self, invoices, master_folio, customer, charges, employee):
        invoice = _invoice(invoices, master_folio, customer, charges, employee)

        printed = invoices.get_invoice_for_print(invoice.id)
        minibar_line = printed["grouped_items"]["service_charges"][0]
        assert minibar_line["quantity"] == 2
        assert minibar_line["unit_price"] == Decimal("50000")
        assert minibar_line["amount"] == Decimal("100000")
        assert printed["grouped_items"]["surcharges"] == []
        assert printed["subtotal"] == Decimal("600000")
        assert printed["tax_amount"] == Decimal("60000")
        assert printed["grand_total"] == Decimal("660000")
