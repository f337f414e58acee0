"""
本体对象测试：交易类别映射、账单属性、表约束
"""
import pytest
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from pms_billing.models import ontology
from pms_billing.models.ontology import (
    CATEGORY_BREAKDOWN_KEYS, CATEGORY_DIRECTIONS, CATEGORY_LABELS,
    DailySnapshot, FolioStatus, GuestFolio, RatePolicyLog, TransactionCategory, TransactionType
)


class TestTransactionCategory:

    @pytest.mark.parametrize("mapping", [CATEGORY_DIRECTIONS, CATEGORY_BREAKDOWN_KEYS, CATEGORY_LABELS])
    def test_mappings_cover_every_category(self, mapping):
        assert set(mapping) == set(TransactionCategory)

    def test_debit_categories(self):
        debits = {c for c in TransactionCategory if c.direction == TransactionType.DEBIT}
        assert debits == {
            TransactionCategory.ROOM_CHARGE,
            TransactionCategory.SERVICE_CHARGE,
            TransactionCategory.SURCHARGE,
            TransactionCategory.PENALTY,
            TransactionCategory.REFUND,
        }

    def test_credit_categories(self):
        credits = {c for c in TransactionCategory if c.direction == TransactionType.CREDIT}
        assert credits == {
            TransactionCategory.DEPOSIT,
            TransactionCategory.PAYMENT,
            TransactionCategory.DISCOUNT,
        }

    def test_breakdown_keys_unique(self):
        keys = [c.breakdown_key for c in TransactionCategory]
        assert len(keys) == len(set(keys))

    def test_label(self):
        assert TransactionCategory.ROOM_CHARGE.label == "Room Charge"
        assert TransactionCategory.REFUND.breakdown_key == "refunds"

    def test_incomplete_mapping_rejected(self):
        partial = {TransactionCategory.ROOM_CHARGE: "room"}
        with pytest.raises(RuntimeError) as exc:
            ontology._ensure_exhaustive(partial, "PARTIAL")
        assert "PAYMENT" in str(exc.value)


class TestGuestFolio:

    def test_is_open(self):
        assert GuestFolio(status=FolioStatus.OPEN).is_open
        assert not GuestFolio(status=FolioStatus.CLOSED).is_open


class TestConstraints:

    def test_rate_policy_log_unique_per_room_type_and_date(self, db_session, room_type):
        db_session.add(RatePolicyLog(room_type_id=room_type.id, date=date(2026, 3, 14), price=Decimal("1")))
        db_session.commit()

        db_session.add(RatePolicyLog(room_type_id=room_type.id, date=date(2026, 3, 14), price=Decimal("2")))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_daily_snapshot_unique_per_date(self, db_session):
        db_session.add(DailySnapshot(snapshot_date=date(2026, 3, 14), created_at=datetime(2026, 3, 14)))
        db_session.commit()

        db_session.add(DailySnapshot(snapshot_date=date(2026, 3, 14)))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_daily_snapshot_columns(self):
        columns = [c.name for c in DailySnapshot.__table__.columns]
        assert len(columns) == len(set(columns))
        assert {"created_at", "updated_at"} <= set(columns)
