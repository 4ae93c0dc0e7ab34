import pytest

from orvex.errors import ValidationError
from orvex.models import SETTINGS
from orvex.services.user_settings import UserSettings


def test_defaults_are_returned_and_persisted(settings, db):
    current = settings.get("1")

    assert current == UserSettings(
        priority_fee_sol=0.001, mev_protection=True, default_buy_amount_sol=0.1, slippage_bps=1500
    )
    assert db.get_record(SETTINGS, "1") == current.to_dict()


def test_update_merges_onto_defaults(settings):
    updated = settings.update("1", slippage_bps=300)

    assert updated.slippage_bps == 300
    assert updated.priority_fee_sol == 0.001
    assert settings.get("1") == updated


def test_update_coerces_values(settings):
    updated = settings.update("1", priority_fee_sol="0.005", mev_protection="off", slippage_bps=250.0)

    assert updated.priority_fee_sol == 0.005
    assert updated.mev_protection is False
    assert updated.slippage_bps == 250
    assert updated.priority_fee_lamports == 5_000_000


@pytest.mark.parametrize("changes", [
    {"priority_fee_sol": -0.1},
    {"default_buy_amount_sol": 0},
    {"slippage_bps": 0},
    {"slippage_bps": 10_001},
    {"slippage_bps": 12.5},
    {"mev_protection": "maybe"},
    {"priority_fee_sol": float("nan")},
    {"priority_fee_sol": True},
    {"leverage": 10},
])
def test_invalid_updates_write_nothing(settings, changes):
    before = settings.get("1")

    with pytest.raises(ValidationError):
        settings.update("1", **changes)

    assert settings.get("1") == before


def test_users_are_isolated(settings):
    settings.update("1", mev_protection=False)

    assert settings.get("2").mev_protection is True
