"""Minimal Solana JSON-RPC client for payment verification.

Only ``getTransaction`` is needed. A reply of ``result: null`` means the
node does not know the signature; anything else that goes wrong (timeouts,
connection errors, HTTP 5xx, JSON-RPC error objects) is retried and finally
raised as ``RpcUnavailableError`` so callers never mistake an outage for a
missing transaction.
"""
import itertools
import logging
import time
from typing import Optional

import requests

from errors import RpcUnavailableError

logger = logging.getLogger(__name__)

# JSON-RPC error codes that mean "not available yet" rather than a bad request
_RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32014, -32603}


class SolanaRpcClient:
    def __init__(self, rpc_url: str, timeout: float = 10.0, max_retries: int = 3,
                 session: requests.Session = None, sleep=time.sleep):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.session = session or requests.Session()
        self._sleep = sleep
        self._ids = itertools.count(1)

    def _call(self, method: str, params: list):
        attempts = 0
        last_err = None
        while attempts < self.max_retries:
            attempts += 1
            payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            try:
                r = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
                if r.status_code == 429 or r.status_code >= 500:
                    last_err = f"HTTP {r.status_code}: {r.text[:200]}"
                else:
                    r.raise_for_status()
                    body = r.json()
                    err = body.get('error')
                    if not err:
                        return body.get('result')
                    if err.get('code') not in _RETRYABLE_RPC_CODES:
                        raise RpcUnavailableError(f"RPC error: {err.get('message', 'unknown')}")
                    last_err = f"RPC {err.get('code')}: {err.get('message')}"
            except RpcUnavailableError:
                raise
            except (requests.RequestException, ValueError) as e:
                last_err = str(e)
            logger.warning("Solana RPC %s attempt %d/%d failed: %s", method, attempts, self.max_retries, last_err)
            if attempts < self.max_retries:
                self._sleep(min(2 ** (attempts - 1), 4))  # 1s, 2s, 4s

        logger.error("Solana RPC %s unavailable after %d attempts: %s", method, attempts, last_err)
        raise RpcUnavailableError("Payment verification temporarily unavailable, please retry")

    def get_transaction(self, signature: str, commitment: str = 'confirmed') -> Optional[dict]:
        """Return the parsed ``getTransaction`` result, or None if unknown."""
        return self._call('getTransaction', [
            signature,
            {
                "encoding": "json",
                "commitment": commitment,
                "maxSupportedTransactionVersion": 0,
            },
        ])


def account_keys(tx: dict) -> list:
    """All account keys of a transaction, in balance-array order.

    Versioned transactions append the writable then readonly addresses loaded
    from lookup tables after the static keys.
    """
    message = (tx.get('transaction') or {}).get('message') or {}
    keys = []
    for k in message.get('accountKeys') or []:
        keys.append(k.get('pubkey') if isinstance(k, dict) else k)
    loaded = (tx.get('meta') or {}).get('loadedAddresses') or {}
    keys.extend(loaded.get('writable') or [])
    keys.extend(loaded.get('readonly') or [])
    return keys


def balance_change_lamports(tx: dict, address: str) -> Optional[int]:
    """Net lamport change of ``address`` in ``tx``; None if it is not involved."""
    meta = tx.get('meta') or {}
    pre = meta.get('preBalances') or []
    post = meta.get('postBalances') or []
    for index, key in enumerate(account_keys(tx)):
        if key == address:
            if index >= len(pre) or index >= len(post):
                return None
            return int(post[index]) - int(pre[index])
    return None
