"""
发票服务 - 本体操作层
管理 Invoice 和 InvoiceDetail 对象

开票规则：
- 只能为同一账单中未作废的借方交易开票
- 每笔交易最多开票一次（invoice_details.transaction_id 唯一）
- 发票金额为所含交易金额之和，编码为 INV<YYMMDD><NNNN>
"""
import logging
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pms_billing.config import settings
from pms_billing.database import unit_of_work
from pms_billing.exceptions import BadRequestError, NotFoundError
from pms_billing.models.events import EventType, InvoiceCreatedData
from pms_billing.models.ontology import (
    Customer, FolioTransaction, GuestFolio, Invoice, InvoiceDetail, TransactionCategory,
    TransactionType
)
from pms_billing.models.schemas import InvoiceCreate, InvoiceFilter, PageParams
from pms_billing.services.event_bus import Event, publish_event
from pms_billing.services.folio_service import ZERO, to_money
from pms_billing.services.pagination import paginate
from pms_billing.services.sequence_service import SequenceService

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("invoice_date", "created_at", "code", "total_amount")

# 可开票的借方类别
INVOICE_CATEGORIES = [
    category for category in TransactionCategory
    if category.direction == TransactionType.DEBIT
]


class InvoiceService:
    """发票服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._publish_event = event_publisher
        self._clock = clock or datetime.now
        self.sequences = SequenceService(db, clock=self._clock)

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def create_invoice(self, data: InvoiceCreate, employee_id: Optional[int]) -> Invoice:
        """
        为账单交易开具发票

        Raises:
            NotFoundError: 账单不存在
            BadRequestError: 客户不存在、交易不可开票或已开票
        """
        transaction_ids = list(dict.fromkeys(data.transaction_ids))

        try:
            with unit_of_work(self.db):
                folio = self.db.query(GuestFolio).filter(GuestFolio.id == data.guest_folio_id).first()
                if not folio:
                    raise NotFoundError("账单不存在")

                customer = self.db.query(Customer).filter(
                    Customer.id == data.invoice_to_customer_id
                ).first()
                if not customer:
                    raise BadRequestError("客户不存在")

                transactions = self.db.query(FolioTransaction).filter(
                    FolioTransaction.id.in_(transaction_ids),
                    FolioTransaction.guest_folio_id == folio.id,
                    FolioTransaction.transaction_type == TransactionType.DEBIT,
                    FolioTransaction.is_void == False  # noqa: E712
                ).order_by(FolioTransaction.id).all()

                invalid = sorted(set(transaction_ids) - {tx.id for tx in transactions})
                if invalid:
                    raise BadRequestError(
                        "只能为本账单未作废的消费交易开票",
                        context={'transaction_ids': invalid}
                    )

                invoiced = [
                    row.transaction_id for row in self.db.query(InvoiceDetail.transaction_id).filter(
                        InvoiceDetail.transaction_id.in_(transaction_ids)
                    ).all()
                ]
                if invoiced:
                    raise BadRequestError("部分交易已开票", context={'transaction_ids': sorted(invoiced)})

                invoice = Invoice(
                    code=self.sequences.next_invoice_code(),
                    guest_folio_id=folio.id,
                    invoice_to_customer_id=customer.id,
                    tax_id=data.tax_id,
                    total_amount=to_money(sum((to_money(tx.amount) for tx in transactions), ZERO)),
                    invoice_date=self._clock(),
                    employee_id=employee_id,
                    created_at=self._clock()
                )
                self.db.add(invoice)
                self.db.flush()

                for tx in transactions:
                    self.db.add(InvoiceDetail(invoice_id=invoice.id, transaction_id=tx.id))
                self.db.flush()
        except IntegrityError as e:
            # 并发开票时由唯一约束兜底
            logger.warning(f"Invoice for folio {data.guest_folio_id} rejected by store: {e.orig}")
            raise BadRequestError("部分交易已开票", context={'transaction_ids': transaction_ids}) from e

        self.db.refresh(invoice)
        logger.info(
            f"Invoice {invoice.code} issued for folio {folio.code}: "
            f"{len(transactions)} transactions, total {invoice.total_amount}"
        )

        publish_event(
            EventType.INVOICE_CREATED,
            InvoiceCreatedData(
                invoice_id=invoice.id,
                invoice_code=invoice.code,
                folio_id=folio.id,
                invoice_to_customer_id=invoice.invoice_to_customer_id,
                total_amount=to_money(invoice.total_amount),
                transaction_ids=[tx.id for tx in transactions],
                operator_id=employee_id
            ).to_dict(),
            source="invoice_service",
            publisher=self._publish_event
        )
        return invoice

    def query_invoices(self, filters: Optional[InvoiceFilter] = None,
                       page: Optional[PageParams] = None) -> dict:
        """分页查询发票，默认按开票时间倒序"""
        filters = filters or InvoiceFilter()
        page = page or PageParams(sort_by="invoice_date")
        query = self.db.query(Invoice)

        if filters.code:
            query = query.filter(Invoice.code.startswith(filters.code))
        if filters.guest_folio_id:
            query = query.filter(Invoice.guest_folio_id == filters.guest_folio_id)
        if filters.invoice_to_customer_id:
            query = query.filter(Invoice.invoice_to_customer_id == filters.invoice_to_customer_id)
        if filters.employee_id:
            query = query.filter(Invoice.employee_id == filters.employee_id)
        if filters.from_date:
            query = query.filter(Invoice.invoice_date >= datetime.combine(filters.from_date, time.min))
        if filters.to_date:
            query = query.filter(
                Invoice.invoice_date < datetime.combine(filters.to_date + timedelta(days=1), time.min)
            )

        return paginate(query, Invoice, page, SORTABLE_FIELDS)

    def get_invoice_by_id(self, invoice_id: int) -> dict:
        """发票详情：所含交易及按类别的金额汇总"""
        invoice = self.get_invoice(invoice_id)
        if not invoice:
            raise NotFoundError("发票不存在")

        transactions = [detail.transaction for detail in invoice.details]
        breakdown = {category.breakdown_key: to_money(ZERO) for category in INVOICE_CATEGORIES}
        for tx in transactions:
            key = TransactionCategory(tx.category).breakdown_key
            breakdown[key] = to_money(breakdown[key] + to_money(tx.amount))

        return {
            'invoice': invoice,
            'transactions': transactions,
            'breakdown': breakdown,
        }

    def get_invoice_for_print(self, invoice_id: int) -> dict:
        """打印数据：按类别分组的明细行、小计、税额与总计"""
        detail = self.get_invoice_by_id(invoice_id)
        invoice = detail['invoice']

        grouped_items = {category.breakdown_key: [] for category in INVOICE_CATEGORIES}
        for tx in detail['transactions']:
            category = TransactionCategory(tx.category)
            grouped_items[category.breakdown_key].append({
                'description': tx.description or (tx.service.name if tx.service else category.label),
                'quantity': tx.quantity,
                'unit_price': to_money(tx.unit_price if tx.unit_price is not None else tx.amount),
                'amount': to_money(tx.amount),
            })

        subtotal = to_money(invoice.total_amount)
        tax_amount = to_money(subtotal * settings.INVOICE_TAX_RATE)
        return {
            'invoice': invoice,
            'grouped_items': grouped_items,
            'subtotal': subtotal,
            'tax_rate': settings.INVOICE_TAX_RATE,
            'tax_amount': tax_amount,
            'grand_total': to_money(subtotal + tax_amount),
        }
