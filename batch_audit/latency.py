"""
Audit query latency simulation.

Runs the receipt-based pipeline (receipts -> decode -> sort -> block
timestamps -> output payload) repeatedly in two regimes:

- cold: nothing is cached across runs; every run re-fetches every receipt and
  every block timestamp.
- hot: one receipt cache and one timestamp cache are shared by all runs of the
  mode, warm-up runs included.

Warm-up runs are discarded. Percentiles are nearest-rank on the ascending
sample (rank = ceil(p/100 * n), 1-based, clamped to [1, n]); no interpolation.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from batch_audit.decoder import decode_logs
from batch_audit.events import TrackedTransaction
from batch_audit.receipts import ReceiptReconstructor
from batch_audit.timeline import TimestampResolver, distinct_blocks, merge_events
from batch_audit.utils import utc_now_iso


PHASES = ("receipts", "decode", "sort", "timestamps")

NOTE = (
    "Latency is measured for receipt-based reconstruction "
    "(tx list -> eth_getTransactionReceipt -> decode -> sort -> eth_getBlockByNumber timestamps). "
    "Percentiles are nearest-rank, index ceil(p/100*n)-1; the floor(p/100*(n-1)) rule picks one rank lower "
    "for some n (p95 of 30 runs: index 28 here, 27 there)."
)


def percentile(values: Sequence[float], p: float) -> Optional[float]:
    if not values:
        return None
    s = sorted(values)
    idx = math.ceil(p * len(s) / 100.0) - 1
    idx = min(len(s) - 1, max(0, idx))
    return s[idx]


def summarize(values: Sequence[float]) -> Dict[str, Any]:
    n = len(values)
    return {
        "n": n,
        "min": min(values) if n else None,
        "max": max(values) if n else None,
        "mean": (sum(values) / n) if n else None,
        "p50": percentile(values, 50),
        "p95": percentile(values, 95),
    }


@dataclass
class QueryRun:
    total_ms: float
    phase_ms: Dict[str, float]
    tx_count: int
    event_count: int
    unique_blocks: int
    pending: List[str] = field(default_factory=list)


def run_query_once(
    client: Any,
    entity_id: str,
    txs: Sequence[TrackedTransaction],
    table: Mapping[str, str],
    *,
    concurrency: int = 8,
    receipt_cache: Optional[Dict[str, Any]] = None,
    ts_cache: Optional[Dict[int, int]] = None,
    clock: Callable[[], float] = time.perf_counter,
    sleep: Callable[[float], None] = time.sleep,
) -> QueryRun:
    t_start = clock()

    t0 = clock()
    reconstructor = ReceiptReconstructor(client, receipt_cache=receipt_cache, max_workers=concurrency, sleep=sleep)
    fetched = reconstructor.fetch_logs(txs)
    receipts_ms = (clock() - t0) * 1000.0

    t0 = clock()
    events = decode_logs(fetched.records, entity_id, table)
    decode_ms = (clock() - t0) * 1000.0

    t0 = clock()
    events = merge_events(events)
    sort_ms = (clock() - t0) * 1000.0

    t0 = clock()
    resolver = TimestampResolver(client, ts_cache if ts_cache is not None else {}, max_workers=concurrency, sleep=sleep)
    resolver.attach(events)
    timestamps_ms = (clock() - t0) * 1000.0

    t0 = clock()
    payload = [e.to_dict() for e in events]
    output_ms = (clock() - t0) * 1000.0

    return QueryRun(
        total_ms=(clock() - t_start) * 1000.0,
        phase_ms={
            "receipts_ms": receipts_ms,
            "decode_ms": decode_ms,
            "sort_ms": sort_ms,
            "timestamps_ms": timestamps_ms,
            "output_ms": output_ms,
        },
        tx_count=len(txs),
        event_count=len(payload),
        unique_blocks=len(distinct_blocks(events)),
        pending=fetched.pending,
    )


def _run_mode(
    mode: str,
    client: Any,
    entity_id: str,
    txs: Sequence[TrackedTransaction],
    table: Mapping[str, str],
    *,
    warmup: int,
    runs: int,
    concurrency: int,
    clock: Callable[[], float],
    sleep: Callable[[float], None],
) -> Dict[str, Any]:
    receipt_cache: Optional[Dict[str, Any]] = {} if mode == "hot" else None
    ts_cache: Optional[Dict[int, int]] = {} if mode == "hot" else None

    def once() -> QueryRun:
        return run_query_once(
            client,
            entity_id,
            txs,
            table,
            concurrency=concurrency,
            receipt_cache=receipt_cache,
            ts_cache=ts_cache,
            clock=clock,
            sleep=sleep,
        )

    for _ in range(warmup):
        once()

    details = [once() for _ in range(runs)]
    first = details[0] if details else None
    return {
        "mode": mode,
        "totals": summarize([r.total_ms for r in details]),
        "phases": {p: summarize([r.phase_ms[f"{p}_ms"] for r in details]) for p in PHASES},
        "payload": {
            "tx_count": first.tx_count if first else len(txs),
            "event_count": first.event_count if first else None,
            "unique_blocks": first.unique_blocks if first else None,
        },
    }


def simulate_query_latency(
    client: Any,
    entity_id: str,
    txs: Sequence[TrackedTransaction],
    table: Mapping[str, str],
    *,
    warmup: int = 3,
    runs: int = 30,
    concurrency: int = 8,
    clock: Callable[[], float] = time.perf_counter,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    print(f"[simQuery] warmup={warmup} runs={runs} concurrency={concurrency}")
    modes: Dict[str, Dict[str, Any]] = {}
    for mode in ("cold", "hot"):
        print(f"[simQuery] mode {mode.upper()}" + (" (receipt+timestamp caches)" if mode == "hot" else " (no caches)"))
        modes[mode] = _run_mode(
            mode,
            client,
            entity_id,
            txs,
            table,
            warmup=warmup,
            runs=runs,
            concurrency=concurrency,
            clock=clock,
            sleep=sleep,
        )
    return {
        "generated_at_utc": utc_now_iso(),
        "entity_id": entity_id,
        "tx_count": len(txs),
        "warmup": warmup,
        "runs": runs,
        "concurrency": concurrency,
        "cold": {k: v for k, v in modes["cold"].items() if k != "mode"},
        "hot": {k: v for k, v in modes["hot"].items() if k != "mode"},
        "note": NOTE,
    }


def _fmt(v: Optional[float]) -> str:
    return "n/a" if v is None else f"{v:.2f}"


def print_table(title: str, rows: List[tuple]) -> None:
    k_w = max([len(k) for k, _v in rows] + [10])
    print(f"\n{title}")
    print("-" * max(40, k_w + 20))
    for k, v in rows:
        print(f"{k.ljust(k_w)}  {v}")


def print_latency_tables(report: Dict[str, Any]) -> None:
    for mode in ("cold", "hot"):
        m = report[mode]
        t = m["totals"]
        p = m["payload"]
        print_table(
            f"[simQuery] Summary ({mode.upper()})",
            [
                ("runs", f"{t['n']}"),
                ("tx / events / blocks", f"{p['tx_count']} / {p['event_count']} / {p['unique_blocks']}"),
                ("total_ms p50", _fmt(t["p50"])),
                ("total_ms p95", _fmt(t["p95"])),
                ("total_ms mean", _fmt(t["mean"])),
                ("total_ms max", _fmt(t["max"])),
            ],
        )
        print_table(
            f"[simQuery] Phase means ({mode.upper()})",
            [(f"{phase}_ms mean", _fmt(m["phases"][phase]["mean"])) for phase in PHASES],
        )


def render_latency_markdown(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("# Audit query latency (receipt-based reconstruction)")
    lines.append("")
    lines.append(f"- Generated: `{report['generated_at_utc']}`")
    lines.append(f"- Entity id: `{report['entity_id']}`")
    lines.append(f"- Warm-up runs: `{report['warmup']}`, measured runs: `{report['runs']}`, fan-out: `{report['concurrency']}`")
    lines.append("")
    for mode in ("cold", "hot"):
        m = report[mode]
        p = m["payload"]
        lines.append(f"## {mode.upper()}")
        lines.append("")
        lines.append(f"Payload: {p['tx_count']} tx, {p['event_count']} events, {p['unique_blocks']} distinct blocks.")
        lines.append("")
        lines.append("| Phase | n | min ms | p50 ms | p95 ms | mean ms | max ms |")
        lines.append("|---|---:|---:|---:|---:|---:|---:|")
        rows = [("total", m["totals"])] + [(phase, m["phases"][phase]) for phase in PHASES]
        for name, s in rows:
            lines.append(
                f"| {name} | {s['n']} | {_fmt(s['min'])} | {_fmt(s['p50'])} | {_fmt(s['p95'])} | {_fmt(s['mean'])} | {_fmt(s['max'])} |"
            )
        lines.append("")
    lines.append(report["note"])
    return "\n".join(lines).rstrip() + "\n"
