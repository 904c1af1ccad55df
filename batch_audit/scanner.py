"""
Chunked `eth_getLogs` range scanning.

Free/public endpoints enforce undisclosed range and rate ceilings. The scanner
keeps one mutable chunk size per scan: when every endpoint rejects a window as
too large (or stays rate limited after backoff) the chunk size is halved and
the *same* window start is retried. It is never grown back within a scan.

A hard ceiling on the number of range requests bounds the worst-case cost;
hitting it stops the scan and returns what was collected, flagged incomplete.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from batch_audit.events import RawLogRecord
from batch_audit.rpc import RpcError, eth_get_logs, is_range_too_large, is_retryable_error


DEFAULT_MAX_REQUESTS = 50_000


class ScanError(RuntimeError):
    pass


@dataclass(frozen=True)
class SourceFilter:
    address: str
    topics: List[Any]  # topic0 (or list of topic0s), then optional indexed filters


@dataclass
class ScanProgress:
    label: str
    from_block: int
    to_block: int
    next_block: int
    chunk_size: int
    chunks_done: int
    requests: int
    logs_found: int
    elapsed_s: float

    @property
    def pct(self) -> float:
        total = self.to_block - self.from_block + 1
        if total <= 0:
            return 100.0
        return min(100.0, 100.0 * (self.next_block - self.from_block) / total)

    @property
    def eta_s(self) -> Optional[float]:
        covered = self.next_block - self.from_block
        if covered <= 0 or self.elapsed_s <= 0:
            return None
        remaining = self.to_block - self.next_block + 1
        return max(0.0, remaining * self.elapsed_s / covered)


def print_progress(p: ScanProgress) -> None:
    eta = f"{p.eta_s:,.0f}s" if p.eta_s is not None else "?"
    print(
        f"[scan:{p.label}] {p.pct:5.1f}% next={p.next_block:,}/{p.to_block:,} "
        f"chunks={p.chunks_done:,} chunk_size={p.chunk_size:,} logs={p.logs_found:,} eta={eta}"
    )


@dataclass
class ScanResult:
    label: str
    records: List[RawLogRecord] = field(default_factory=list)
    from_block: int = 0
    to_block: int = 0
    scanned_to_block: int = 0
    final_chunk_size: int = 0
    chunks: int = 0
    requests: int = 0
    stopped_early: bool = False
    hit_request_ceiling: bool = False

    @property
    def complete(self) -> bool:
        return not self.hit_request_ceiling and (self.stopped_early or self.scanned_to_block >= self.to_block)

    def bounds(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "scanned_to_block": self.scanned_to_block,
            "final_chunk_size": self.final_chunk_size,
            "chunks": self.chunks,
            "requests": self.requests,
            "stopped_early": self.stopped_early,
            "hit_request_ceiling": self.hit_request_ceiling,
        }


class ChunkedLogScanner:
    def __init__(
        self,
        endpoints: Sequence[Any],
        *,
        sleep_s: float = 0.12,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        max_tries: int = 4,
        progress_every: int = 200,
        on_progress: Optional[Callable[[ScanProgress], None]] = print_progress,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not endpoints:
            raise ScanError("no query endpoint available for log scanning")
        self.endpoints = list(endpoints)
        self.sleep_s = sleep_s
        self.max_requests = max_requests
        self.max_tries = max_tries
        self.progress_every = progress_every
        self.on_progress = on_progress
        self._sleep = sleep

    def _query(self, client: Any, source: SourceFilter, start: int, end: int) -> List[Dict[str, Any]]:
        return eth_get_logs(
            client,
            address=source.address,
            topics=source.topics,
            from_block=start,
            to_block=end,
            max_tries=self.max_tries,
            sleep=self._sleep,
        )

    def scan(
        self,
        label: str,
        source: SourceFilter,
        from_block: int,
        to_block: int,
        chunk_size: int,
        early_stop: Optional[Callable[[List[RawLogRecord]], bool]] = None,
    ) -> ScanResult:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        result = ScanResult(
            label=label,
            from_block=from_block,
            to_block=to_block,
            scanned_to_block=from_block - 1,
            final_chunk_size=chunk_size,
        )
        started = time.monotonic()
        start = from_block

        while start <= to_block:
            if result.requests >= self.max_requests:
                result.hit_request_ceiling = True
                print(f"[scan:{label}] request ceiling {self.max_requests:,} reached at block {start:,}; returning partial results")
                break

            end = min(to_block, start + chunk_size - 1)
            logs: Optional[List[Dict[str, Any]]] = None
            errors: List[RpcError] = []
            for client in self.endpoints:
                if result.requests >= self.max_requests:
                    break
                result.requests += 1
                try:
                    logs = self._query(client, source, start, end)
                    break
                except RpcError as e:
                    errors.append(e)

            if logs is None:
                if len(errors) < len(self.endpoints):
                    # request ceiling hit before every endpoint was tried
                    continue
                shrinkable = any(is_range_too_large(e) or is_retryable_error(e) for e in errors)
                if shrinkable and chunk_size > 1:
                    chunk_size = max(1, chunk_size // 2)
                    result.final_chunk_size = chunk_size
                    print(f"[scan:{label}] range {start:,}..{end:,} rejected ({str(errors[-1])[:120]}); chunk_size -> {chunk_size:,}")
                    continue
                raise ScanError(
                    f"eth_getLogs failed for {label} range {start:,}..{end:,} on all {len(self.endpoints)} endpoint(s): {errors[-1]}"
                ) from errors[-1]

            for log in logs:
                try:
                    result.records.append(RawLogRecord.from_rpc(log))
                except (ValueError, TypeError):
                    continue
            result.chunks += 1
            result.scanned_to_block = end
            start = end + 1

            if self.on_progress is not None and (
                result.chunks == 1 or result.chunks % max(1, self.progress_every) == 0 or start > to_block
            ):
                self.on_progress(
                    ScanProgress(
                        label=label,
                        from_block=from_block,
                        to_block=to_block,
                        next_block=start,
                        chunk_size=chunk_size,
                        chunks_done=result.chunks,
                        requests=result.requests,
                        logs_found=len(result.records),
                        elapsed_s=time.monotonic() - started,
                    )
                )

            if early_stop is not None and early_stop(result.records):
                result.stopped_early = True
                print(f"[scan:{label}] stop condition met at block {end:,}")
                break

            if self.sleep_s > 0 and start <= to_block:
                self._sleep(self.sleep_s)

        return result

    def fetch_logs(
        self,
        source: SourceFilter,
        from_block: int,
        to_block: int,
        chunk_size: int,
        early_stop: Optional[Callable[[List[RawLogRecord]], bool]] = None,
    ) -> List[RawLogRecord]:
        """Raw records only; same shape as `ReceiptReconstructor.fetch_logs(...).records`."""
        return self.scan(source.address, source, from_block, to_block, chunk_size, early_stop).records


@dataclass
class ScanJob:
    label: str
    source: SourceFilter
    from_block: int
    to_block: int
    chunk_size: int
    early_stop: Optional[Callable[[List[RawLogRecord]], bool]] = None


def scan_sources(scanner: ChunkedLogScanner, jobs: Sequence[ScanJob], *, max_workers: int = 1) -> List[ScanResult]:
    """Run independent scans (disjoint sources); results come back in job order."""

    def run(job: ScanJob) -> ScanResult:
        return scanner.scan(job.label, job.source, job.from_block, job.to_block, job.chunk_size, job.early_stop)

    if max_workers <= 1 or len(jobs) <= 1:
        return [run(j) for j in jobs]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as ex:
        return list(ex.map(run, jobs))
