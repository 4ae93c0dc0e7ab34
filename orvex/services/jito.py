import logging
from typing import List

import requests

from orvex import config

logger = logging.getLogger("jito")


class RelayError(Exception):
    """A single relay endpoint did not accept the transaction."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class JitoRelay:
    """One Jito block engine ``sendTransaction`` endpoint."""

    def __init__(self, endpoint: str, timeout: float = None, session: requests.Session = None):
        self.endpoint = endpoint
        self.timeout = timeout or config.RELAY_TIMEOUT
        self.session = session or requests.Session()

    def send_transaction(self, transaction_b64: str) -> str:
        """Submit a base64 transaction and return the signature the relay reports."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendTransaction",
            "params": [transaction_b64, {"encoding": "base64"}]
        }
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            data = response.json()
        except requests.Timeout:
            raise RelayError(self.endpoint, "timeout")
        except requests.RequestException as e:
            raise RelayError(self.endpoint, str(e))
        except ValueError:
            raise RelayError(self.endpoint, f"invalid JSON (HTTP {response.status_code})")

        if 'error' in data:
            raise RelayError(self.endpoint, str(data['error'].get('message', data['error'])
                                                if isinstance(data['error'], dict) else data['error']))

        signature = data.get('result')
        if response.status_code != 200 or not isinstance(signature, str) or not signature:
            raise RelayError(self.endpoint, f"no signature in response (HTTP {response.status_code})")
        return signature


def default_relays(endpoints: List[str] = None, timeout: float = None) -> List[JitoRelay]:
    """Relays for the configured endpoints, in priority order."""
    return [JitoRelay(ep, timeout) for ep in (endpoints or config.JITO_RELAY_ENDPOINTS)]
