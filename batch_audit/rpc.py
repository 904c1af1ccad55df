from __future__ import annotations

import itertools
import random
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from batch_audit.utils import hex_to_int, to_hex_qty


USER_AGENT = "batch-audit/reconstruct_audit_timeline"

RETRYABLE_HTTP = (429, 502, 503, 504)
# -32005 limit exceeded, -32016 requests-per-second capacity, -32011 no healthy backend
RETRYABLE_RPC_CODES = (-32005, -32016, -32011)

RETRYABLE_PHRASES = (
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "rate-limit",
    "requests per second capacity",
    "capacity",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "no backend is currently healthy",
)

RANGE_TOO_LARGE_PHRASES = (
    "query returned more than",
    "more than 10000 results",
    "too many results",
    "response size exceeded",
    "block range too wide",
    "block range is too wide",
    "range is too large",
    "range too large",
    "exceeds max results",
    "max is 1k blocks",
)


class RpcError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_s: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.code = code


class RpcClient:
    def __init__(self, rpc_url: str, timeout_s: int = 45, session: requests.Session | None = None):
        self.rpc_url = rpc_url
        self.timeout_s = timeout_s
        self._ids = itertools.count(1)
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=32, pool_maxsize=32)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self._session = session

    def __repr__(self) -> str:
        return f"RpcClient({self.rpc_url!r})"

    def call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self._session.post(
                self.rpc_url,
                json=payload,
                timeout=self.timeout_s,
                headers={"content-type": "application/json", "user-agent": USER_AGENT},
            )
        except requests.RequestException as e:
            raise RpcError(f"RPC transport error: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            retry_after_s: int | None = None
            ra = resp.headers.get("Retry-After")
            if isinstance(ra, str) and ra.strip().isdigit():
                retry_after_s = int(ra.strip())
            raise RpcError(
                f"HTTP {resp.status_code}: {resp.text[:600]}",
                status_code=resp.status_code,
                retry_after_s=retry_after_s,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"invalid JSON-RPC response: {resp.text[:200]!r}") from e

        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            code = err.get("code") if isinstance(err, dict) else None
            raise RpcError(f"RPC error ({method}): {err}", code=code if isinstance(code, int) else None)
        return data.get("result") if isinstance(data, dict) else data


def is_range_too_large(err: BaseException) -> bool:
    msg = str(err).lower()
    return any(s in msg for s in RANGE_TOO_LARGE_PHRASES)


def is_retryable_error(err: BaseException) -> bool:
    if is_range_too_large(err):
        return False
    if getattr(err, "status_code", None) in RETRYABLE_HTTP:
        return True
    if getattr(err, "code", None) in RETRYABLE_RPC_CODES:
        return True
    msg = str(err).lower()
    return any(s in msg for s in RETRYABLE_PHRASES)


def backoff_delay(attempt: int, *, base_s: float = 1.0, cap_s: float = 15.0, retry_after_s: int | None = None) -> float:
    sleep_s = min(base_s * 2 ** (attempt - 1), cap_s)
    if isinstance(retry_after_s, int) and retry_after_s > 0:
        sleep_s = max(sleep_s, float(retry_after_s))
    return sleep_s * (1 + random.uniform(-0.15, 0.15))


def rpc_with_retries(
    client: Any,
    method: str,
    params: list,
    *,
    max_tries: int = 6,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    for attempt in range(1, max_tries + 1):
        try:
            return client.call(method, params)
        except RpcError as e:
            if not is_retryable_error(e) or attempt == max_tries:
                raise
            delay = backoff_delay(attempt, retry_after_s=getattr(e, "retry_after_s", None))
            print(f"[rpc] {method} attempt {attempt}/{max_tries} failed ({str(e)[:120]}); retrying in {delay:.1f}s")
            sleep(delay)
    raise RpcError(f"RPC request failed after retries: {method}")


def eth_block_number(client: Any, **kw: Any) -> int:
    return hex_to_int(rpc_with_retries(client, "eth_blockNumber", [], **kw))


def eth_get_block_timestamp(client: Any, block_number: int, **kw: Any) -> int:
    block = rpc_with_retries(client, "eth_getBlockByNumber", [to_hex_qty(block_number), False], **kw)
    if not isinstance(block, dict):
        raise RpcError(f"missing block {block_number}")
    return hex_to_int(block.get("timestamp"))


def eth_get_transaction_receipt(client: Any, tx_hash: str, **kw: Any) -> Optional[Dict[str, Any]]:
    receipt = rpc_with_retries(client, "eth_getTransactionReceipt", [tx_hash], **kw)
    return receipt if isinstance(receipt, dict) else None


def eth_get_logs(
    client: Any,
    *,
    address: str,
    topics: List[Any],
    from_block: int,
    to_block: int,
    **kw: Any,
) -> List[Dict[str, Any]]:
    params = {
        "address": address,
        "topics": topics,
        "fromBlock": to_hex_qty(from_block),
        "toBlock": to_hex_qty(to_block),
    }
    res = rpc_with_retries(client, "eth_getLogs", [params], **kw)
    return list(res or [])
