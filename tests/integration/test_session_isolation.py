"""Integration tests for per-session transactions on a file database."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.models import Base
from src.models.customer import Customer, CustomerType, Zone
from src.services.db import create_db_engine, is_memory_sqlite


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


def _customer(account_number):
    return Customer(
        account_number=account_number,
        full_name="Isolated Customer",
        phone="0700000001",
        zone=Zone.G3.value,
        customer_type=CustomerType.INDIVIDUAL.value,
        is_active=True,
    )


class TestEngineSelection:
    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_memory_database_shares_one_connection(self, url):
        engine = create_db_engine(url)

        assert is_memory_sqlite(url)
        assert isinstance(engine.pool, StaticPool)
        engine.dispose()

    def test_file_database_uses_connection_pool(self, file_engine):
        assert not is_memory_sqlite(str(file_engine.url))
        assert not isinstance(file_engine.pool, StaticPool)

    def test_server_database_is_not_memory(self):
        assert not is_memory_sqlite("postgresql://billing@localhost/billing")


class TestSessionIsolation:
    """Concurrent units on a file database keep their own transactions."""

    def test_rollback_in_one_session_keeps_other_sessions_work(self, file_engine):
        factory = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
        writer = factory()
        reader = factory()

        writer.add(_customer("NyWs-001"))
        writer.flush()
        reader.execute(select(func.count(Customer.id))).scalar_one()
        reader.rollback()
        writer.commit()
        writer.close()
        reader.close()

        with factory() as fresh:
            assert fresh.execute(select(func.count(Customer.id))).scalar_one() == 1

    def test_commit_in_one_session_leaves_other_unit_uncommitted(self, file_engine):
        factory = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
        unfinished = factory()
        unfinished.add(_customer("NyWs-002"))
        unfinished.flush()
        unfinished.rollback()

        with factory() as committed:
            committed.add(_customer("NyWs-003"))
            committed.commit()

        unfinished.close()
        with factory() as fresh:
            accounts = fresh.execute(select(Customer.account_number)).scalars().all()
        assert accounts == ["NyWs-003"]
