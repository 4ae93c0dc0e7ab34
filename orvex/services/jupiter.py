#!/usr/bin/env python3
"""Quote and transaction build client for the Jupiter aggregator."""
import base64
import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from orvex import config
from orvex.errors import BuildError, NetworkError

logger = logging.getLogger("jupiter")

# errorCode values the quote API sends with HTTP 400 when no swap exists
NO_ROUTE_ERROR_CODES = {
    "COULD_NOT_FIND_ANY_ROUTE",
    "NO_ROUTES_FOUND",
    "TOKEN_NOT_TRADABLE",
    "ROUTE_PLAN_DOES_NOT_CONSUME_ALL_THE_AMOUNT",
    "CIRCULAR_ARBITRAGE_IS_DISABLED",
}


def _is_no_route(data: dict) -> bool:
    if data.get('errorCode') in NO_ROUTE_ERROR_CODES:
        return True
    return 'route' in str(data.get('error', '')).lower()


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact: float
    route_plan: tuple = ()
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, data: dict) -> "Quote":
        return cls(
            input_mint=data['inputMint'],
            output_mint=data['outputMint'],
            in_amount=int(data['inAmount']),
            out_amount=int(data['outAmount']),
            price_impact=float(data.get('priceImpactPct') or 0),
            route_plan=tuple(data.get('routePlan') or ()),
            raw=data,
        )


@dataclass(frozen=True)
class BuiltTransaction:
    tx_bytes: bytes
    last_valid_block_height: int


class JupiterClient:
    def __init__(self, quote_url: str = None, swap_url: str = None, api_key: str = None, timeout: float = None):
        self.quote_url = quote_url or config.JUPITER_QUOTE_API
        self.swap_url = swap_url or config.JUPITER_SWAP_API
        self.api_key = config.JUPITER_API_KEY if api_key is None else api_key
        self.timeout = timeout or config.JUPITER_TIMEOUT
        self.session = requests.Session()

    @property
    def headers(self) -> dict:
        return {'x-api-key': self.api_key} if self.api_key else {}

    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Optional[Quote]:
        """
        Best route for ``amount`` raw units of ``input_mint``.

        Returns None when the aggregator has no route.

        Raises:
            NetworkError: Aggregator unreachable or erroring
        """
        params = {
            'inputMint': input_mint,
            'outputMint': output_mint,
            'amount': str(amount),
            'slippageBps': str(slippage_bps),
        }
        try:
            resp = self.session.get(self.quote_url, params=params, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Quote request failed: {e}", details={"stage": "quote"})

        if resp.status_code >= 500:
            raise NetworkError(f"Quote service error: HTTP {resp.status_code}", details={"stage": "quote"})

        try:
            data = resp.json()
        except ValueError:
            raise NetworkError("Quote service returned invalid JSON", details={"stage": "quote"})
        if not isinstance(data, dict):
            raise NetworkError("Quote service returned an unexpected body", details={"stage": "quote"})

        if resp.status_code == 400 and _is_no_route(data):
            logger.info(f"No route {input_mint[:8]}... -> {output_mint[:8]}...: {data.get('error')}")
            return None
        if resp.status_code != 200:
            # auth, throttling and malformed requests are service failures
            raise NetworkError(
                f"Quote service refused request: HTTP {resp.status_code} {data.get('error')}",
                details={"stage": "quote", "status": resp.status_code},
            )
        if 'error' in data:
            logger.info(f"No route {input_mint[:8]}... -> {output_mint[:8]}...: {data.get('error')}")
            return None
        if not data.get('routePlan'):
            return None
        return Quote.from_response(data)

    def build_transaction(self, quote: Quote, user_public_key: str, priority_fee_lamports: int) -> BuiltTransaction:
        """
        Unsigned swap transaction for ``quote``.

        Raises:
            BuildError: Aggregator refused or failed to build
        """
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": priority_fee_lamports,
        }
        try:
            resp = self.session.post(self.swap_url, json=payload, headers=self.headers, timeout=self.timeout)
            data = resp.json()
        except requests.RequestException as e:
            raise BuildError(f"Swap build request failed: {e}", details={"stage": "build"})
        except ValueError:
            raise BuildError(f"Swap build returned invalid JSON (HTTP {resp.status_code})", details={"stage": "build"})

        if resp.status_code != 200 or 'error' in data or 'swapTransaction' not in data:
            raise BuildError(
                f"Swap build failed: {data.get('error', f'HTTP {resp.status_code}')}",
                details={"stage": "build", "status": resp.status_code}
            )

        return BuiltTransaction(
            tx_bytes=base64.b64decode(data['swapTransaction']),
            last_valid_block_height=int(data.get('lastValidBlockHeight') or 0),
        )
