from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.keypair import Keypair
from solders.rpc.responses import GetBalanceResp, GetBlockHeightResp, GetSignatureStatusesResp
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from orvex.errors import NetworkError, SubmissionError
from orvex.services.chain import ChainClient, SignatureStatus

from conftest import TOKEN_MINT

OWNER = str(Keypair().pubkey())
SIG = str(Signature.default())


def _rpc_error(message):
    def send_raw_transaction():
        pass
    return SolanaRpcException(ConnectionError(message), send_raw_transaction, None, None)


def _chain():
    client = MagicMock()
    return ChainClient(client=client), client


def _status(confirmation_status=None, err=None):
    return SimpleNamespace(confirmation_status=confirmation_status, err=err)


def test_balance():
    chain, client = _chain()
    client.get_balance.return_value = SimpleNamespace(value=42)

    assert chain.get_balance(OWNER) == 42


def test_token_balance_sums_accounts():
    chain, client = _chain()
    accounts = [
        SimpleNamespace(account=SimpleNamespace(data=SimpleNamespace(parsed={"info": {"tokenAmount": {"amount": amount}}})))
        for amount in ("1000", "234")
    ]
    client.get_token_accounts_by_owner_json_parsed.return_value = SimpleNamespace(value=accounts)

    assert chain.get_token_balance(OWNER, TOKEN_MINT) == 1234


def test_submit_skips_preflight():
    chain, client = _chain()
    client.send_raw_transaction.return_value = SimpleNamespace(value=Signature.default())

    assert chain.submit(b"tx") == SIG
    _, kwargs = client.send_raw_transaction.call_args
    assert kwargs["opts"].skip_preflight is True


def test_submit_error_mapping():
    chain, client = _chain()

    client.send_raw_transaction.side_effect = _rpc_error("connection reset")
    with pytest.raises(NetworkError):
        chain.submit(b"tx")

    client.send_raw_transaction.side_effect = RPCException("Transaction simulation failed")
    with pytest.raises(SubmissionError):
        chain.submit(b"tx")


@pytest.mark.parametrize("raw, expected", [
    (None, None),
    (_status(TransactionConfirmationStatus.Processed), SignatureStatus(confirmed=False)),
    (_status(TransactionConfirmationStatus.Confirmed), SignatureStatus(confirmed=True)),
    (_status(TransactionConfirmationStatus.Finalized), SignatureStatus(confirmed=True)),
    (_status(TransactionConfirmationStatus.Confirmed, err="InstructionError(2, Custom(6001))"),
     SignatureStatus(confirmed=False, err="InstructionError(2, Custom(6001))")),
])
def test_signature_status(raw, expected):
    chain, client = _chain()
    client.get_signature_statuses.return_value = SimpleNamespace(value=[raw])

    assert chain.get_signature_status(SIG, search_history=True) == expected
    _, kwargs = client.get_signature_statuses.call_args
    assert kwargs["search_transaction_history"] is True


def test_block_height_network_error():
    chain, client = _chain()
    client.get_block_height.side_effect = _rpc_error("timeout")

    with pytest.raises(NetworkError):
        chain.get_block_height()


def _rpc_error_body(resp_type):
    return resp_type.from_json(
        '{"jsonrpc": "2.0", "error": {"code": -32603, "message": "Internal error"}, "id": 1}'
    )


def test_rpc_error_bodies_are_network_errors():
    chain, client = _chain()
    client.get_block_height.return_value = _rpc_error_body(GetBlockHeightResp)
    client.get_balance.return_value = _rpc_error_body(GetBalanceResp)
    client.get_signature_statuses.return_value = _rpc_error_body(GetSignatureStatusesResp)

    with pytest.raises(NetworkError):
        chain.get_block_height()
    with pytest.raises(NetworkError):
        chain.get_balance(OWNER)
    with pytest.raises(NetworkError) as exc:
        chain.get_signature_status(SIG)
    assert exc.value.details["stage"] == "confirm"


def test_raised_rpc_errors_on_reads_are_network_errors():
    chain, client = _chain()
    client.get_latest_blockhash.side_effect = RPCException("rate limited")
    client.get_token_accounts_by_owner_json_parsed.side_effect = RPCException("rate limited")

    with pytest.raises(NetworkError):
        chain.get_latest_blockhash()
    with pytest.raises(NetworkError):
        chain.get_token_balance(OWNER, TOKEN_MINT)
