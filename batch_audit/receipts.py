"""
Receipt-based log retrieval.

Given transaction hashes that were recorded when they were submitted, fetch
each receipt with `eth_getTransactionReceipt` and take its logs directly. This
is N point lookups instead of an open-ended range scan. A missing receipt
(still pending) is reported and skipped; it is not retried within the run.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from batch_audit.decoder import decode_logs
from batch_audit.events import DomainEvent, RawLogRecord, TrackedTransaction
from batch_audit.rpc import eth_get_transaction_receipt
from batch_audit.utils import hex_to_int


@dataclass
class TxOutcome:
    transaction: TrackedTransaction
    block_number: Optional[int] = None
    records: List[RawLogRecord] = field(default_factory=list)
    events: List[DomainEvent] = field(default_factory=list)

    @property
    def pending(self) -> bool:
        return self.block_number is None


@dataclass
class ReceiptFetchResult:
    outcomes: List[TxOutcome] = field(default_factory=list)

    @property
    def records(self) -> List[RawLogRecord]:
        return [r for o in self.outcomes for r in o.records]

    @property
    def events(self) -> List[DomainEvent]:
        return [e for o in self.outcomes for e in o.events]

    @property
    def pending(self) -> List[str]:
        return [o.transaction.transaction_hash for o in self.outcomes if o.pending]

    def observed_bounds(self) -> Dict[str, Optional[int]]:
        blocks = [o.block_number for o in self.outcomes if o.block_number is not None]
        return {"min_block": min(blocks) if blocks else None, "max_block": max(blocks) if blocks else None}


class ReceiptReconstructor:
    def __init__(
        self,
        client: Any,
        *,
        receipt_cache: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        max_workers: int = 8,
        max_tries: int = 6,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        # tx hash (lowercase) -> receipt or None; shared across runs only when the caller passes one in
        self.receipt_cache = receipt_cache
        self.max_workers = max_workers
        self.max_tries = max_tries
        self._sleep = sleep

    def fetch_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        key = tx_hash.lower()
        if self.receipt_cache is not None and key in self.receipt_cache:
            return self.receipt_cache[key]
        receipt = eth_get_transaction_receipt(self.client, tx_hash, max_tries=self.max_tries, sleep=self._sleep)
        if self.receipt_cache is not None:
            self.receipt_cache[key] = receipt
        return receipt

    def fetch_receipts(self, txs: Sequence[TrackedTransaction]) -> List[Optional[Dict[str, Any]]]:
        """Receipts in input order; completion order of concurrent fetches is irrelevant."""
        hashes = [t.transaction_hash for t in txs]
        if self.max_workers <= 1 or len(hashes) <= 1:
            return [self.fetch_receipt(h) for h in hashes]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(hashes))) as ex:
            return list(ex.map(self.fetch_receipt, hashes))

    def fetch_logs(self, txs: Sequence[TrackedTransaction]) -> ReceiptFetchResult:
        result = ReceiptFetchResult()
        for t, receipt in zip(txs, self.fetch_receipts(txs)):
            outcome = TxOutcome(transaction=t)
            if receipt is not None:
                outcome.block_number = hex_to_int(receipt.get("blockNumber"))
                for log in receipt.get("logs") or []:
                    try:
                        outcome.records.append(RawLogRecord.from_rpc(log))
                    except (ValueError, TypeError):
                        continue
            result.outcomes.append(outcome)
        return result

    def reconstruct(
        self,
        txs: Sequence[TrackedTransaction],
        entity_id: str,
        table: Mapping[str, str],
        *,
        verbose: bool = False,
    ) -> ReceiptFetchResult:
        result = self.fetch_logs(txs)
        for o in result.outcomes:
            if o.pending:
                if verbose:
                    print(f"[receipts] receipt not found yet for tx={o.transaction.transaction_hash} (pending?)")
                continue
            o.events = decode_logs(o.records, entity_id, table)
            if verbose:
                print(
                    f"- tx={o.transaction.transaction_hash[:10]}... purpose=\"{o.transaction.purpose}\" "
                    f"logsDecoded={len(o.events)} block={o.block_number}"
                )
        return result
