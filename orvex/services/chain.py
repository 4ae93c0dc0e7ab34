#!/usr/bin/env python3
"""Thin wrapper over the Solana RPC client used by the swap engine."""
import logging
from dataclasses import dataclass
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.rpc.responses import RPCError
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from orvex import config
from orvex.errors import NetworkError, SubmissionError

logger = logging.getLogger("chain")

_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)
_RPC_ERROR_TYPES = RPCError.__args__


@dataclass(frozen=True)
class SignatureStatus:
    confirmed: bool
    err: Optional[str] = None


class ChainClient:
    def __init__(self, rpc_url: str = None, client: Client = None, timeout: float = 10):
        self.client = client or Client(rpc_url or config.SOLANA_RPC, timeout=timeout)

    def _read(self, label: str, stage: str, method, *args, **kwargs):
        """
        Run a read-only RPC call and return its ``value``.

        Transport failures, raised JSON-RPC errors and error bodies parsed
        into an RPCError all surface as NetworkError.
        """
        try:
            resp = method(*args, **kwargs)
        except SolanaRpcException as e:
            raise NetworkError(f"{label} failed: {e}", details={"stage": stage})
        except RPCException as e:
            raise NetworkError(f"{label} failed: RPC error {e}", details={"stage": stage})
        if isinstance(resp, _RPC_ERROR_TYPES):
            logger.warning(f"{label} returned RPC error: {resp}")
            raise NetworkError(f"{label} failed: RPC error {resp}", details={"stage": stage})
        return resp.value

    def get_balance(self, owner: str) -> int:
        """SOL balance in lamports."""
        return self._read("Balance lookup", "balance", self.client.get_balance, Pubkey.from_string(owner))

    def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token balance summed over every token account for ``mint``."""
        accounts = self._read(
            "Token balance lookup", "balance",
            self.client.get_token_accounts_by_owner_json_parsed,
            Pubkey.from_string(owner), TokenAccountOpts(mint=Pubkey.from_string(mint)),
        )
        total = 0
        for acc in accounts:
            parsed = acc.account.data.parsed
            total += int(parsed['info']['tokenAmount']['amount'])
        return total

    def submit(self, signed_tx: bytes) -> str:
        """
        Send a signed transaction once.

        Raises:
            NetworkError: RPC node unreachable (safe to resend the same bytes)
            SubmissionError: Node rejected the transaction
        """
        try:
            resp = self.client.send_raw_transaction(signed_tx, opts=TxOpts(skip_preflight=True))
        except SolanaRpcException as e:
            raise NetworkError(f"RPC unreachable: {e}", details={"stage": "submit"})
        except RPCException as e:
            raise SubmissionError(f"RPC rejected transaction: {e}", details={"stage": "submit"})
        return str(resp.value)

    def get_signature_status(self, signature: str, search_history: bool = False) -> Optional[SignatureStatus]:
        """Confirmation state of ``signature``, or None while it is unknown to the node."""
        statuses = self._read(
            "Status lookup", "confirm", self.client.get_signature_statuses,
            [Signature.from_string(signature)], search_transaction_history=search_history,
        )
        status = statuses[0]
        if status is None:
            return None
        if status.err is not None:
            return SignatureStatus(confirmed=False, err=str(status.err))
        return SignatureStatus(confirmed=status.confirmation_status in _LANDED)

    def get_block_height(self) -> int:
        return self._read("Block height lookup", "confirm", self.client.get_block_height)

    def get_latest_blockhash(self):
        """Returns (blockhash, last_valid_block_height)."""
        value = self._read("Blockhash lookup", "build", self.client.get_latest_blockhash)
        return value.blockhash, value.last_valid_block_height
