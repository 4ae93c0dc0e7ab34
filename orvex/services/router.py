#!/usr/bin/env python3
"""
Transaction submission routing.

Unprotected trades go straight to the RPC node. Protected (MEV) trades go
to the Jito relays in priority order and fall back to the RPC node when
none accepts. Callers get the same receipt either way.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from solders.signature import Signature
from solders.transaction import VersionedTransaction

from orvex import config
from orvex.errors import NetworkError, SubmissionError
from orvex.services.audit import audit_logger
from orvex.services.jito import JitoRelay, RelayError

logger = logging.getLogger("router")

ROUTE_DIRECT = "direct"
ROUTE_PROTECTED = "protected"


@dataclass(frozen=True)
class SubmissionReceipt:
    signature: str
    route: str
    endpoint: str
    fell_back: bool = False

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "route": self.route,
            "endpoint": self.endpoint,
            "fell_back": self.fell_back,
        }


def transaction_signature(signed_tx: bytes) -> str:
    """The fee payer signature, which is also the transaction id."""
    return str(VersionedTransaction.from_bytes(signed_tx).signatures[0])


class Router:
    def __init__(
        self,
        chain,
        relays: List[JitoRelay],
        direct_retries: int = None,
        on_fallback: Optional[Callable[[Dict[str, str]], None]] = None,
    ):
        self.chain = chain
        self.relays = relays
        self.direct_retries = config.DIRECT_SEND_RETRIES if direct_retries is None else direct_retries
        self.on_fallback = on_fallback

    def submit(self, signed_tx: bytes, protected: bool) -> SubmissionReceipt:
        signature = transaction_signature(signed_tx)
        if protected and self.relays:
            receipt = self._submit_protected(signed_tx, signature)
            if receipt:
                return receipt
            return self._submit_direct(signed_tx, signature, fell_back=True)
        return self._submit_direct(signed_tx, signature)

    def _submit_protected(self, signed_tx: bytes, signature: str) -> Optional[SubmissionReceipt]:
        encoded = base64.b64encode(signed_tx).decode("utf-8")
        errors: Dict[str, str] = {}
        for relay in self.relays:
            try:
                returned = relay.send_transaction(encoded)
                Signature.from_string(returned)
            except RelayError as e:
                logger.warning(f"Relay {relay.endpoint} failed: {e.reason}")
                errors[relay.endpoint] = e.reason
                continue
            except ValueError:
                logger.warning(f"Relay {relay.endpoint} returned a malformed signature")
                errors[relay.endpoint] = "malformed signature"
                continue

            if returned != signature:
                logger.warning(f"Relay {relay.endpoint} returned signature for a different transaction")
                errors[relay.endpoint] = "signature mismatch"
                continue

            logger.info(f"Transaction {signature[:16]}... accepted by {relay.endpoint}")
            return SubmissionReceipt(signature=signature, route=ROUTE_PROTECTED, endpoint=relay.endpoint)

        logger.warning(f"All {len(self.relays)} relays failed, falling back to direct RPC submission")
        audit_logger.log_relay_fallback([r.endpoint for r in self.relays], errors)
        if self.on_fallback:
            self.on_fallback(errors)
        return None

    def _submit_direct(self, signed_tx: bytes, signature: str, fell_back: bool = False) -> SubmissionReceipt:
        attempts = self.direct_retries + 1
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                returned = self.chain.submit(signed_tx)
            except NetworkError as e:
                last_error = e
                logger.warning(f"Direct send attempt {attempt}/{attempts} failed: {e.message}")
                continue
            except SubmissionError as e:
                e.details.setdefault("signature", signature)
                raise
            return SubmissionReceipt(
                signature=returned or signature, route=ROUTE_DIRECT, endpoint="rpc", fell_back=fell_back
            )

        raise SubmissionError(
            f"RPC unreachable after {attempts} attempts: {last_error.message}",
            details={"signature": signature, "stage": "submit", "attempts": attempts}
        )
