"""Unit tests for customer zone helpers."""

import pytest

from src.models.customer import Customer, format_account_number, parse_zone
from src.services.errors import ValidationError


@pytest.mark.parametrize(
    "zone,sequence,expected",
    [("Nyakahura", 7, "NyWs-07"), ("G3", 7, "NyWs-007"), ("Githunguri", 7, "NyWs-0007")],
)
def test_account_number_padding_per_zone(zone, sequence, expected):
    assert format_account_number(zone, sequence) == expected


def test_account_sequence_must_be_positive():
    with pytest.raises(ValidationError):
        format_account_number("G3", 0)


def test_unknown_zone_rejected():
    with pytest.raises(ValidationError) as exc_info:
        parse_zone("Atlantis")
    assert exc_info.value.code == "invalid_zone"


def test_zone_code():
    assert Customer(zone="Githunguri").zone_code == "GTH"
    with pytest.raises(ValidationError):
        Customer(zone="").zone_code
