"""
Pytest 配置和共享 fixtures
"""
import pytest
from datetime import datetime
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pms_billing.database import Base
from pms_billing.models import ontology  # noqa: F401
from pms_billing.models.ontology import (
    Customer, Employee, FolioType, PaymentMethod, Room, RoomStatus, RoomType,
    Service, ServiceGroup, StayDetail, StayDetailStatus, StayRecord
)
from pms_billing.models.schemas import FolioCreate
from pms_billing.services.folio_service import FolioService

# 2026-03-14 是星期六
FIXED_NOW = datetime(2026, 3, 14, 2, 0, 0)


@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def clock():
    """固定营业时间"""
    return lambda: FIXED_NOW


@pytest.fixture
def published():
    """收集服务发布的事件，不经过全局总线"""
    return []


# ============== 基础数据 Fixtures ==============

@pytest.fixture
def room_type(db_session):
    rt = RoomType(
        code="STD",
        name="标准间",
        rack_rate=Decimal("500000"),
        extra_person_fee=Decimal("100000"),
        base_capacity=2,
        max_capacity=4
    )
    db_session.add(rt)
    db_session.commit()
    db_session.refresh(rt)
    return rt


@pytest.fixture
def room(db_session, room_type):
    r = Room(code="101", room_type_id=room_type.id, status=RoomStatus.OCCUPIED)
    db_session.add(r)
    db_session.commit()
    db_session.refresh(r)
    return r


@pytest.fixture
def customer(db_session):
    c = Customer(code="C001", full_name="张三", phone="13800138000")
    db_session.add(c)
    db_session.commit()
    db_session.refresh(c)
    return c


@pytest.fixture
def employee(db_session):
    e = Employee(code="E001", name="前台小王", is_active=True)
    db_session.add(e)
    db_session.commit()
    db_session.refresh(e)
    return e


@pytest.fixture
def payment_method(db_session):
    pm = PaymentMethod(code="CASH", name="现金")
    db_session.add(pm)
    db_session.commit()
    db_session.refresh(pm)
    return pm


@pytest.fixture
def service(db_session):
    s = Service(
        code="MINIBAR",
        name="迷你吧",
        unit_price=Decimal("50000"),
        service_group=ServiceGroup.GENERAL
    )
    db_session.add(s)
    db_session.commit()
    db_session.refresh(s)
    return s


@pytest.fixture
def stay_record(db_session, customer):
    sr = StayRecord(customer_id=customer.id, check_in_time=datetime(2026, 3, 12, 14, 0))
    db_session.add(sr)
    db_session.commit()
    db_session.refresh(sr)
    return sr


@pytest.fixture
def stay_detail(db_session, stay_record, room):
    sd = StayDetail(
        stay_record_id=stay_record.id,
        room_id=room.id,
        status=StayDetailStatus.OCCUPIED,
        expected_check_out=datetime(2026, 3, 16, 12, 0),
        number_of_guests=2
    )
    db_session.add(sd)
    db_session.commit()
    db_session.refresh(sd)
    return sd


@pytest.fixture
def folio_service(db_session, clock, published):
    return FolioService(db_session, event_publisher=published.append, clock=clock)


@pytest.fixture
def master_folio(folio_service, customer, stay_record):
    return folio_service.create_folio(FolioCreate(
        folio_type=FolioType.MASTER,
        bill_to_customer_id=customer.id,
        stay_record_id=stay_record.id
    ))
