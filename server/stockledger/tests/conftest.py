from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stockledger.db import Base, transaction
from stockledger.events import clear_subscribers
from stockledger.inventory.service import create_item
from stockledger.users.service import create_user


def create_session():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


@pytest.fixture(autouse=True)
def reset_event_subscribers():
    yield
    clear_subscribers()


@pytest.fixture()
def db():
    session = create_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def users(db):
    with transaction(db):
        created = {
            "manager": create_user(db, username="manager", role="manager"),
            "planner": create_user(db, username="planner", role="planner"),
            "operator": create_user(db, username="operator", role="operator"),
            "operator2": create_user(db, username="operator2", role="operator"),
            "warehouse": create_user(db, username="warehouse", role="warehouse"),
        }
    return created


@pytest.fixture()
def make_item(db, users):
    def _make(tier, code, quantity="0", critical_level=None, name=None):
        with transaction(db):
            item = create_item(
                db,
                tier=tier,
                code=code,
                name=name or code,
                opening_quantity=Decimal(quantity),
                critical_level=Decimal(critical_level) if critical_level is not None else None,
                actor_id=users["warehouse"].id,
            )
        return item

    return _make
