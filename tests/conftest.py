import sqlite3
import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any statement is compiled
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

import app.models  # noqa: E402,F401
from app.models.billing import Invoice, InvoiceStatus  # noqa: E402
from app.models.customer import Customer  # noqa: E402
from app.models.subscription import Subscription, SubscriptionStatus  # noqa: E402
from app.services.events.dispatcher import build_dispatcher  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={
            "check_same_thread": False,
        },
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy
    # emit BEGIN itself.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(engine, session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture()
def owner_id():
    return uuid.uuid4()


@pytest.fixture()
def customer(db_session, owner_id):
    customer = Customer(
        external_id="cus_test",
        owner_id=owner_id,
        email="ada@example.com",
        name="Ada Lovelace",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def subscription(db_session, customer):
    subscription = Subscription(
        external_id="sub_test",
        customer_id=customer.id,
        status=SubscriptionStatus.active,
        plan_name="Pro",
        amount=2500,
        currency="usd",
        billing_interval="month",
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def invoice(db_session, customer, subscription):
    invoice = Invoice(
        external_id="in_test",
        customer_id=customer.id,
        subscription_id=subscription.id,
        number="INV-0001",
        status=InvoiceStatus.open,
        currency="usd",
        amount_due=2500,
        amount_paid=0,
        retry_count=0,
    )
    db_session.add(invoice)
    db_session.commit()
    db_session.refresh(invoice)
    return invoice


@pytest.fixture()
def notifier():
    notifier = MagicMock()
    notifier.send.return_value = True
    return notifier


@pytest.fixture()
def processor_client():
    return MagicMock()


@pytest.fixture()
def dispatcher(notifier, processor_client):
    return build_dispatcher(notifier=notifier, client_factory=lambda: processor_client)
