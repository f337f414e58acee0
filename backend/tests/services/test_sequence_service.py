"""
Tests for pms_billing/services/sequence_service.py
Covers: format_code, next_value, next_folio_code, next_transaction_code, next_reservation_code
"""
from datetime import date, datetime

from pms_billing.models.ontology import CodeSequence
from pms_billing.services.sequence_service import SequenceService, format_code


def test_format_code():
    assert format_code("FLO", date(2026, 3, 14), 7, 4) == "FLO2603140007"
    assert format_code("TXN", date(2026, 3, 14), 12, 5) == "TXN26031400012"


class TestSequenceService:

    def test_first_value_creates_row(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        assert svc.next_value("FLO260314") == 1
        db_session.commit()

        row = db_session.query(CodeSequence).filter(CodeSequence.prefix == "FLO260314").one()
        assert row.last_value == 1

    def test_values_increment(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        values = [svc.next_value("TXN260314") for _ in range(3)]
        assert values == [1, 2, 3]

    def test_folio_codes(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        assert svc.next_folio_code() == "FLO2603140001"
        assert svc.next_folio_code() == "FLO2603140002"

    def test_prefixes_independent(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        svc.next_folio_code()
        svc.next_folio_code()

        assert svc.next_transaction_code() == "TXN26031400001"
        assert svc.next_reservation_code() == "RES2603140001"

    def test_new_day_restarts(self, db_session, clock):
        SequenceService(db_session, clock=clock).next_folio_code()
        next_day = SequenceService(db_session, clock=lambda: datetime(2026, 3, 15, 0, 30))
        assert next_day.next_folio_code() == "FLO2603150001"

    def test_rollback_releases_value(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        svc.next_folio_code()
        db_session.commit()

        svc.next_folio_code()
        db_session.rollback()

        assert svc.next_folio_code() == "FLO2603140002"

    def test_row_stamped_with_service_clock(self, db_session, clock):
        svc = SequenceService(db_session, clock=clock)
        svc.next_folio_code()
        db_session.commit()
        row = db_session.query(CodeSequence).filter(CodeSequence.prefix == "FLO260314").one()
        assert row.updated_at == datetime(2026, 3, 14, 2, 0)

        later = SequenceService(db_session, clock=lambda: datetime(2026, 3, 14, 23, 45))
        later.next_value("FLO260314")
        db_session.commit()
        db_session.refresh(row)
        assert row.last_value == 2
        assert row.updated_at == datetime(2026, 3, 14, 23, 45)
