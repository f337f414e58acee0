"""
Tests for pms_billing/services/rate_policy_log.py
Covers: policy_log_dates, rebuild, find_for_date, find_nearest_past, get_logs_for_policy
"""
from datetime import date, datetime
from decimal import Decimal

from pms_billing.models.ontology import RatePolicy, RatePolicyLog, RatePolicyLoop
from pms_billing.services.rate_policy_log import RatePolicyLogCache, policy_log_dates


def _make_policy(db, room_type, code, from_date, to_date, price, loop=RatePolicyLoop.NONE):
    policy = RatePolicy(
        code=code,
        name=code,
        room_type_id=room_type.id,
        from_date=from_date,
        to_date=to_date,
        loop=loop,
        price=Decimal(price),
        priority=0,
        created_at=datetime(2026, 1, 1),
    )
    db.add(policy)
    db.flush()
    return policy


class TestPolicyLogDates:

    def test_none_loop_every_day(self):
        policy = RatePolicy(from_date=date(2026, 3, 30), to_date=date(2026, 4, 2), loop=RatePolicyLoop.NONE)
        assert policy_log_dates(policy) == [
            date(2026, 3, 30), date(2026, 3, 31), date(2026, 4, 1), date(2026, 4, 2)
        ]

    def test_recurring_anchor_only(self):
        policy = RatePolicy(from_date=date(2026, 3, 13), to_date=date(2026, 3, 16), loop=RatePolicyLoop.WEEKLY)
        assert policy_log_dates(policy) == [date(2026, 3, 13)]


class TestRebuild:

    def test_none_policy_materializes_range(self, db_session, room_type):
        policy = _make_policy(db_session, room_type, "MAR", date(2026, 3, 10), date(2026, 3, 12), "600000")
        rows = RatePolicyLogCache(db_session).rebuild(policy)
        db_session.commit()

        assert rows == 3
        logs = db_session.query(RatePolicyLog).order_by(RatePolicyLog.date).all()
        assert [log.date for log in logs] == [date(2026, 3, 10), date(2026, 3, 11), date(2026, 3, 12)]
        assert all(log.price == Decimal("600000") for log in logs)
        assert all(log.rate_policy_id == policy.id for log in logs)

    def test_weekly_policy_single_anchor_row(self, db_session, room_type):
        policy = _make_policy(db_session, room_type, "WKND", date(2026, 3, 14), date(2026, 3, 15),
                              "1200000", loop=RatePolicyLoop.WEEKLY)
        assert RatePolicyLogCache(db_session).rebuild(policy) == 1
        db_session.commit()

        logs = db_session.query(RatePolicyLog).all()
        assert len(logs) == 1
        assert logs[0].date == date(2026, 3, 14)

    def test_overlapping_rebuild_last_write_wins(self, db_session, room_type):
        cache = RatePolicyLogCache(db_session)
        first = _make_policy(db_session, room_type, "A", date(2026, 3, 10), date(2026, 3, 12), "600000")
        cache.rebuild(first)
        second = _make_policy(db_session, room_type, "B", date(2026, 3, 12), date(2026, 3, 13), "650000")
        cache.rebuild(second)
        db_session.commit()

        assert db_session.query(RatePolicyLog).count() == 4
        overwritten = cache.find_for_date(room_type.id, date(2026, 3, 12))
        assert overwritten.price == Decimal("650000")
        assert overwritten.rate_policy_id == second.id
        assert cache.find_for_date(room_type.id, date(2026, 3, 11)).rate_policy_id == first.id

    def test_rebuild_after_price_change_updates_rows(self, db_session, room_type):
        cache = RatePolicyLogCache(db_session)
        policy = _make_policy(db_session, room_type, "A", date(2026, 3, 10), date(2026, 3, 11), "600000")
        cache.rebuild(policy)
        policy.price = Decimal("620000")
        cache.rebuild(policy)
        db_session.commit()

        assert db_session.query(RatePolicyLog).count() == 2
        assert cache.find_for_date(room_type.id, date(2026, 3, 10)).price == Decimal("620000")


class TestLookups:

    def test_find_for_date_ignores_time(self, db_session, room_type):
        cache = RatePolicyLogCache(db_session)
        cache.rebuild(_make_policy(db_session, room_type, "A", date(2026, 3, 10), date(2026, 3, 10), "600000"))
        db_session.commit()

        assert cache.find_for_date(room_type.id, datetime(2026, 3, 10, 22, 0)) is not None
        assert cache.find_for_date(room_type.id, date(2026, 3, 11)) is None

    def test_find_nearest_past(self, db_session, room_type):
        cache = RatePolicyLogCache(db_session)
        cache.rebuild(_make_policy(db_session, room_type, "A", date(2026, 3, 1), date(2026, 3, 1), "400000"))
        cache.rebuild(_make_policy(db_session, room_type, "B", date(2026, 3, 10), date(2026, 3, 10), "480000"))
        db_session.commit()

        assert cache.find_nearest_past(room_type.id, date(2026, 3, 12)).price == Decimal("480000")
        assert cache.find_nearest_past(room_type.id, date(2026, 3, 10)).price == Decimal("480000")
        assert cache.find_nearest_past(room_type.id, date(2026, 3, 5)).price == Decimal("400000")
        assert cache.find_nearest_past(room_type.id, date(2026, 2, 28)) is None

    def test_get_logs_for_policy_limited(self, db_session, room_type):
        cache = RatePolicyLogCache(db_session)
        policy = _make_policy(db_session, room_type, "A", date(2026, 3, 1), date(2026, 3, 10), "400000")
        cache.rebuild(policy)
        db_session.commit()

        logs = cache.get_logs_for_policy(policy.id, limit=3)
        assert [log.date for log in logs] == [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3)]
