"""Unit tests for the settings store and per-run snapshot."""

from decimal import Decimal

import pytest

from src.models.customer import CustomerType
from src.services.settings_service import DEFAULT_SETTINGS, SettingsService, SettingsSnapshot


class TestSettingsService:
    """Settings persistence and snapshot parsing."""

    @pytest.fixture
    def service(self, db_session):
        return SettingsService(db_session)

    def test_seed_defaults_is_idempotent(self, service, db_session):
        assert service.seed_defaults() == len(DEFAULT_SETTINGS)
        db_session.commit()

        assert service.seed_defaults() == 0

    def test_seed_keeps_existing_values(self, service, db_session):
        service.set("flat_rate_individual", "350.00")
        db_session.commit()

        service.seed_defaults()
        db_session.commit()

        assert service.get("flat_rate_individual") == "350.00"

    def test_set_updates_in_place(self, service, db_session):
        row = service.set("payment_due_days", "7")
        db_session.commit()

        assert service.set("payment_due_days", "10") is row
        assert row.category == "billing"

    def test_get_missing_returns_default(self, service):
        assert service.get("nope", "fallback") == "fallback"

    def test_empty_store_gives_default_snapshot(self, service):
        assert service.snapshot() == SettingsSnapshot()

    def test_snapshot_parses_values(self, service, db_session):
        service.set("flat_rate_institution", "1500")
        service.set("fine_escalation_days", "30")
        service.set("paybill_number", "247247")
        db_session.commit()

        snapshot = service.snapshot()

        assert snapshot.flat_rate_institution == Decimal("1500")
        assert snapshot.fine_escalation_days == 30
        assert snapshot.payment_channels == {"paybill_number": "247247"}

    def test_invalid_value_falls_back_to_default(self, service, db_session):
        service.set("late_fine_grace_days", "five")
        service.set("monthly_contribution_amount", "lots")
        db_session.commit()

        snapshot = service.snapshot()

        assert snapshot.late_fine_grace_days == 5
        assert snapshot.monthly_contribution_amount == Decimal("100.00")

    def test_snapshot_is_immutable(self, service):
        snapshot = service.snapshot()

        with pytest.raises(AttributeError):
            snapshot.payment_due_days = 9
        with pytest.raises(TypeError):
            snapshot.payment_channels["paybill_number"] = "1"


def test_flat_rate_for_customer_type():
    snapshot = SettingsSnapshot(flat_rate_individual=Decimal("300"), flat_rate_institution=Decimal("900"))

    assert snapshot.flat_rate_for(CustomerType.INDIVIDUAL.value) == Decimal("300")
    assert snapshot.flat_rate_for(CustomerType.INSTITUTION.value) == Decimal("900")
