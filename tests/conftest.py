import os

os.environ.setdefault("ORVEX_AUDIT_ENABLED", "false")
os.environ.setdefault("ORVEX_ENCRYPTION_KEY", "test-encryption-secret-0123456789abcdef")

from typing import List, Optional

import pytest
import sqlalchemy as sa
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from sqlalchemy.pool import StaticPool

from orvex import config
from orvex.database import OrvexDB
from orvex.services.chain import SignatureStatus
from orvex.services.jito import RelayError
from orvex.services.jupiter import BuiltTransaction, Quote
from orvex.services.keystore import WalletVault
from orvex.services.pending_actions import PendingActionTracker
from orvex.services.positions import PositionLedger
from orvex.services.router import Router
from orvex.services.trading import SwapExecutor
from orvex.services.user_settings import SettingsStore

TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TEST_SECRET = "test-encryption-secret-0123456789abcdef"
TEST_KDF_ITERATIONS = 1_000


def make_unsigned_tx(payer: str, lamports: int = 1) -> bytes:
    """A real single-signer v0 transaction with a placeholder signature."""
    payer_key = Pubkey.from_string(payer)
    ix = transfer(TransferParams(from_pubkey=payer_key, to_pubkey=Keypair().pubkey(), lamports=lamports))
    msg = MessageV0.try_compile(
        payer=payer_key,
        instructions=[ix],
        address_lookup_table_accounts=[],
        recent_blockhash=Hash.new_unique(),
    )
    return bytes(VersionedTransaction.populate(msg, [Signature.default()]))


def make_quote(
    in_amount: int = 500_000_000,
    out_amount: int = 123_456_789,
    price_impact: float = 0.05,
    input_mint: str = config.SOL_MINT,
    output_mint: str = TOKEN_MINT,
) -> Quote:
    raw = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "inAmount": str(in_amount),
        "outAmount": str(out_amount),
        "priceImpactPct": str(price_impact),
        "routePlan": [{"swapInfo": {"label": "Whirlpool"}, "percent": 100}],
    }
    return Quote.from_response(raw)


class FakeChain:
    def __init__(self, balance: int = config.LAMPORTS_PER_SOL, token_balance: int = 0):
        self.balance = balance
        self.token_balance = token_balance
        self.block_height = 1_000
        self.statuses: List[Optional[SignatureStatus]] = [SignatureStatus(confirmed=True)]
        self.history_status: Optional[SignatureStatus] = None
        self.submitted: List[bytes] = []
        self.submit_errors: List[Exception] = []
        self.status_calls = 0

    def get_balance(self, owner: str) -> int:
        return self.balance

    def get_token_balance(self, owner: str, mint: str) -> int:
        return self.token_balance

    def submit(self, signed_tx: bytes) -> str:
        self.submitted.append(signed_tx)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return str(VersionedTransaction.from_bytes(signed_tx).signatures[0])

    def get_signature_status(self, signature: str, search_history: bool = False):
        self.status_calls += 1
        if search_history:
            return self.history_status
        if len(self.statuses) > 1:
            status = self.statuses.pop(0)
        else:
            status = self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return status

    def get_block_height(self) -> int:
        return self.block_height

    def get_latest_blockhash(self):
        return Hash.new_unique(), self.block_height + 150


class FakeJupiter:
    def __init__(self, quote: Optional[Quote] = None):
        self.quote = quote if quote is not None else make_quote()
        self.quote_calls = []
        self.build_calls = []
        self.last_valid_block_height = 1_150

    def get_quote(self, input_mint, output_mint, amount, slippage_bps):
        self.quote_calls.append((input_mint, output_mint, amount, slippage_bps))
        return self.quote

    def build_transaction(self, quote, user_public_key, priority_fee_lamports):
        self.build_calls.append((quote, user_public_key, priority_fee_lamports))
        return BuiltTransaction(
            tx_bytes=make_unsigned_tx(user_public_key),
            last_valid_block_height=self.last_valid_block_height,
        )


class FakeRelay:
    def __init__(self, endpoint: str, fail_with: Optional[str] = None, returns: Optional[str] = None):
        self.endpoint = endpoint
        self.fail_with = fail_with
        self.returns = returns
        self.calls: List[str] = []

    def send_transaction(self, transaction_b64: str) -> str:
        import base64
        self.calls.append(transaction_b64)
        if self.fail_with:
            raise RelayError(self.endpoint, self.fail_with)
        if self.returns is not None:
            return self.returns
        raw = base64.b64decode(transaction_b64)
        return str(VersionedTransaction.from_bytes(raw).signatures[0])


@pytest.fixture
def db():
    engine = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orvex_db = OrvexDB(engine=engine)
    orvex_db.create_tables()
    yield orvex_db
    engine.dispose()


@pytest.fixture
def vault(db):
    return WalletVault(db, encryption_key=TEST_SECRET, iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def settings(db):
    return SettingsStore(db)


@pytest.fixture
def ledger(db):
    return PositionLedger(db)


@pytest.fixture
def pending(db, vault):
    return PendingActionTracker(db, vault)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def jupiter():
    return FakeJupiter()


@pytest.fixture
def router(chain):
    return Router(chain, relays=[], direct_retries=2)


@pytest.fixture
def executor(vault, settings, ledger, jupiter, chain, router):
    return SwapExecutor(
        vault, settings, ledger, jupiter, chain, router,
        poll_interval=0, confirm_timeout=5, sleep=lambda _s: None,
    )


@pytest.fixture
def wallet(vault):
    return vault.generate("42")
