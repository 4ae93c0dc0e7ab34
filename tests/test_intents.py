import base58
import pytest
from solders.keypair import Keypair

from orvex.errors import NetworkError, ValidationError
from orvex.services.intents import (
    Cancel,
    ConfirmAmount,
    CreateWallet,
    ImportWallet,
    InitiateTrade,
    IntentDispatcher,
    ShowPositions,
    StartWallet,
    TextMessage,
    UpdateSetting,
    parse_intent,
)
from orvex.services.pending_actions import AWAITING_IMPORT_SECRET

from conftest import TOKEN_MINT

USER = "42"


@pytest.fixture
def dispatcher(vault, settings, ledger, pending, executor, chain):
    return IntentDispatcher(vault, settings, ledger, pending, executor, chain)


def test_parse_intent():
    assert parse_intent({"type": "cancel"}) == Cancel()
    assert parse_intent({"type": "import_wallet"}) == ImportWallet(secret=None)
    assert parse_intent({"type": "initiate_trade", "token_mint": TOKEN_MINT, "direction": "buy"}) == \
        InitiateTrade(token_mint=TOKEN_MINT, direction="buy", amount=None)


@pytest.mark.parametrize("payload", [
    None,
    [],
    {},
    {"type": "launch_rocket"},
    {"type": "update_setting", "field": "slippage_bps"},
    {"type": "cancel", "extra": 1},
])
def test_parse_intent_rejects(payload):
    with pytest.raises(ValidationError):
        parse_intent(payload)


@pytest.mark.parametrize("payload", [
    {"type": "import_wallet", "secret": 12345},
    {"type": "text", "text": 7},
    {"type": "update_setting", "field": 5, "value": 1},
    {"type": "initiate_trade", "token_mint": ["x"], "direction": "buy"},
    {"type": "initiate_trade", "token_mint": TOKEN_MINT, "direction": 1},
    {"type": "initiate_trade", "token_mint": TOKEN_MINT, "direction": "buy", "amount": "0.5"},
    {"type": "initiate_trade", "token_mint": TOKEN_MINT, "direction": "buy", "amount": True},
    {"type": "withdraw", "destination": None, "amount": "all"},
])
def test_parse_intent_rejects_mistyped_fields(payload):
    with pytest.raises(ValidationError) as exc:
        parse_intent(payload)

    assert exc.value.details["type"] == payload["type"]


def test_mistyped_text_leaves_pending_import_in_place(dispatcher, pending):
    dispatcher.dispatch(USER, ImportWallet())

    with pytest.raises(ValidationError):
        parse_intent({"type": "text", "text": 12345})

    assert pending.get(USER).kind == AWAITING_IMPORT_SECRET


def test_start_wallet_without_wallet(dispatcher):
    result = dispatcher.dispatch(USER, StartWallet())

    assert result == {"success": True, "intent": "start_wallet", "data": {"has_wallet": False}}


def test_start_wallet_tolerates_balance_outage(dispatcher, chain):
    dispatcher.dispatch(USER, CreateWallet())

    def balance_down(owner):
        raise NetworkError("down")

    chain.get_balance = balance_down

    result = dispatcher.dispatch(USER, StartWallet())

    assert result["success"] is True
    assert result["data"]["balance_sol"] is None


def test_create_twice_is_error_payload(dispatcher):
    assert dispatcher.dispatch(USER, CreateWallet())["success"] is True

    result = dispatcher.dispatch(USER, CreateWallet())

    assert result["success"] is False
    assert result["error"]["code"] == "ALREADY_EXISTS"


def test_import_conversation(dispatcher):
    kp = Keypair()

    started = dispatcher.dispatch(USER, ImportWallet())
    finished = dispatcher.dispatch(USER, TextMessage(base58.b58encode(bytes(kp)).decode()))

    assert started["data"] == {"awaiting": "import_secret"}
    assert finished["data"]["consumed"] is True
    assert finished["data"]["wallet"]["public_key"] == str(kp.pubkey())


def test_unrelated_text_is_not_consumed(dispatcher):
    assert dispatcher.dispatch(USER, TextMessage("gm"))["data"] == {"consumed": False}


def test_trade_requires_wallet(dispatcher):
    result = dispatcher.dispatch(USER, InitiateTrade(TOKEN_MINT, "buy"))

    assert result["error"]["code"] == "NO_WALLET"


def test_custom_amount_trade(dispatcher, ledger):
    dispatcher.dispatch(USER, CreateWallet())

    started = dispatcher.dispatch(USER, InitiateTrade(TOKEN_MINT, "buy"))
    result = dispatcher.dispatch(USER, ConfirmAmount("0.5"))

    assert started["data"] == {"awaiting": "amount", "token_mint": TOKEN_MINT, "direction": "buy"}
    assert result["success"] is True
    assert result["data"]["trade"]["outcome"] == "confirmed"
    assert len(ledger.list(USER)) == 1


def test_confirm_amount_without_pending_trade(dispatcher):
    result = dispatcher.dispatch(USER, ConfirmAmount("0.5"))

    assert result["error"]["code"] == "NO_PENDING_ACTION"


def test_failed_trade_reports_state_trace(dispatcher):
    dispatcher.dispatch(USER, CreateWallet())

    result = dispatcher.dispatch(USER, InitiateTrade(TOKEN_MINT, "buy", amount=2.0))

    assert result["success"] is False
    assert result["error"]["code"] == "INSUFFICIENT_BALANCE"
    assert result["error"]["attempt"]["states"] == ["QUOTE_REQUESTED", "QUOTED", "FAILED"]


def test_update_setting_and_positions(dispatcher):
    updated = dispatcher.dispatch(USER, UpdateSetting("slippage_bps", 300))
    bad = dispatcher.dispatch(USER, UpdateSetting("slippage_bps", -1))

    assert updated["data"]["slippage_bps"] == 300
    assert bad["error"]["code"] == "VALIDATION_ERROR"
    assert dispatcher.dispatch(USER, ShowPositions())["data"] == {"positions": []}


def test_cancel(dispatcher):
    dispatcher.dispatch(USER, ImportWallet())

    assert dispatcher.dispatch(USER, Cancel())["data"] == {"cancelled": True}
    assert dispatcher.dispatch(USER, TextMessage("anything"))["data"] == {"consumed": False}


def test_confirm_amount_does_not_consume_import_slot(dispatcher, pending):
    dispatcher.dispatch(USER, ImportWallet())

    result = dispatcher.dispatch(USER, ConfirmAmount("0.5"))

    assert result["error"]["code"] == "NO_PENDING_ACTION"
    assert pending.get(USER).kind == AWAITING_IMPORT_SECRET
