from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from batch_audit.events import DomainEvent, TrackedTransaction
from batch_audit.rpc import eth_get_block_timestamp


def dedupe_transactions(txs: Iterable[TrackedTransaction]) -> List[TrackedTransaction]:
    """Drop repeated transaction hashes (case-insensitive), keeping first occurrence and order."""
    seen = set()
    out: List[TrackedTransaction] = []
    for t in txs:
        key = t.transaction_hash.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(t)
    return out


def merge_events(*batches: Iterable[DomainEvent]) -> List[DomainEvent]:
    """
    Merge decoded events into one timeline ordered by (block_number, log_index).

    A log position is unique per chain, so a repeated position can only be the
    same log seen twice (e.g. via overlapping sources); the first copy is kept.
    """
    merged: List[DomainEvent] = []
    seen = set()
    for batch in batches:
        for ev in batch:
            key = (ev.block_number, ev.log_index)
            if key in seen:
                continue
            seen.add(key)
            merged.append(ev)
    merged.sort(key=lambda e: (e.block_number, e.log_index))
    return merged


def distinct_blocks(events: Sequence[DomainEvent]) -> List[int]:
    return sorted({e.block_number for e in events})


class TimestampResolver:
    """
    One `eth_getBlockByNumber` per distinct block; results land in `cache`
    (block number -> unix seconds), which callers may share across runs.
    """

    def __init__(
        self,
        client: Any,
        cache: Optional[Dict[int, int]] = None,
        *,
        max_workers: int = 8,
        max_tries: int = 6,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.cache: Dict[int, int] = cache if cache is not None else {}
        self.max_workers = max_workers
        self.max_tries = max_tries
        self._sleep = sleep
        self.lookups = 0

    def _fetch(self, block_number: int) -> int:
        ts = eth_get_block_timestamp(self.client, block_number, max_tries=self.max_tries, sleep=self._sleep)
        self.cache[block_number] = ts
        return ts

    def resolve(self, block_numbers: Iterable[int]) -> Dict[int, int]:
        wanted = sorted(set(int(b) for b in block_numbers))
        missing = [b for b in wanted if b not in self.cache]
        self.lookups += len(missing)
        if missing:
            if self.max_workers <= 1 or len(missing) == 1:
                for b in missing:
                    self._fetch(b)
            else:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(missing))) as ex:
                    list(ex.map(self._fetch, missing))
        return {b: self.cache[b] for b in wanted}

    def attach(self, events: Sequence[DomainEvent]) -> Dict[int, int]:
        resolved = self.resolve(e.block_number for e in events)
        for e in events:
            e.timestamp = resolved[e.block_number]
        return resolved
