"""In-memory stand-ins for the ledger query service."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

from batch_audit.decoder import topic0_for
from batch_audit.rpc import RpcError
from batch_audit.utils import keccak_hex


ENTITY_ID = keccak_hex("coffee-batch-001")
OTHER_ENTITY_ID = keccak_hex("tea-batch-999")
ACTOR = "0x" + "ab" * 20


def word(value: int) -> str:
    return format(value, "064x")


def bytes32(label: str) -> str:
    return keccak_hex(label)


def make_log(
    kind: str,
    *,
    block: int,
    index: int,
    tx: str = "0x" + "11" * 32,
    entity_id: str = ENTITY_ID,
    topics: Optional[List[str]] = None,
    data_words: Optional[List[str]] = None,
    address: str = "0x" + "cc" * 20,
) -> Dict[str, Any]:
    if topics is None:
        topics = [bytes32(f"step:{block}:{index}"), bytes32("org:acme")]
    data = "0x" + "".join(data_words or [])
    return {
        "address": address,
        "topics": [topic0_for(kind), entity_id] + topics,
        "data": data,
        "blockNumber": hex(block),
        "transactionHash": tx,
        "logIndex": hex(index),
    }


def cid_log(step_type: int, *, block: int, index: int, **kw: Any) -> Dict[str, Any]:
    words = [bytes32(f"cid:{step_type}")[2:], word(step_type), word(int(ACTOR, 16))]
    return make_log("CidAnchored", block=block, index=index, data_words=words, **kw)


class FakeClient:
    """Answers eth_* calls from dictionaries; records every call."""

    def __init__(
        self,
        *,
        receipts: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        block_timestamps: Optional[Dict[int, int]] = None,
        get_logs: Optional[Callable[[Dict[str, Any]], List[Dict[str, Any]]]] = None,
        latest_block: int = 0,
        name: str = "fake",
    ) -> None:
        self.receipts = {k.lower(): v for k, v in (receipts or {}).items()}
        self.block_timestamps = block_timestamps or {}
        self.get_logs = get_logs
        self.latest_block = latest_block
        self.name = name
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def call(self, method: str, params: list) -> Any:
        with self._lock:
            self.calls.append((method, params))
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0].lower())
        if method == "eth_getBlockByNumber":
            n = int(params[0], 16)
            if n not in self.block_timestamps:
                return None
            return {"number": params[0], "timestamp": hex(self.block_timestamps[n])}
        if method == "eth_getLogs":
            if self.get_logs is None:
                raise RpcError("eth_getLogs not supported")
            return self.get_logs(params[0])
        if method == "eth_blockNumber":
            return hex(self.latest_block)
        raise RpcError(f"method not found: {method}", code=-32601)

    def count(self, method: str) -> int:
        return sum(1 for m, _p in self.calls if m == method)


def receipt(block: int, logs: List[Dict[str, Any]], tx: str) -> Dict[str, Any]:
    return {"transactionHash": tx, "blockNumber": hex(block), "logs": logs}


def no_sleep(_s: float) -> None:
    return None
