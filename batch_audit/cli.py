#!/usr/bin/env python3
"""
Reconstruct an auditable batch timeline from on-chain logs.

Default path: read the batch's recorded transaction hashes from the local
store, fetch each receipt, decode the CidRollup / DocumentRegistry /
ProcessManager logs, order them by (block, logIndex) and timestamp them. No
block-range scanning.

`--scan` switches to chunked `eth_getLogs` over `--from-block..--to-block`
against every configured endpoint (failover in order), one scan per registry.

Afterwards the receipt path is re-run under cold and hot caching to report
audit query latency (p50/p95 per phase), unless `--skip-sim` is given.

Env (.env is read, never written):
  OP_SEPOLIA_RPC_URL, OP_SEPOLIA_PRIVATE_RPCS_JSON, OP_SEPOLIA_PUBLIC_RPCS_JSON,
  AUDIT_PRODUCT_ID, CID_ROLLUP_ADDRESS, DOCUMENT_REGISTRY_ADDRESS,
  PROCESS_MANAGER_ADDRESS, ACTOR_REGISTRY_ADDRESS
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from batch_audit.completeness import REQUIRED_STEP_TYPES, check_completeness, steps_observed_predicate
from batch_audit.config import ConfigError, Settings, load_settings
from batch_audit.decoder import build_signature_table, decode_logs, topic0_for
from batch_audit.events import (
    CID_ANCHORED,
    DOCUMENT_ANCHORED,
    PROCESS_CREATED,
    PROCESS_STATUS_CHANGED,
    DomainEvent,
    TrackedTransaction,
)
from batch_audit.latency import print_latency_tables, render_latency_markdown, simulate_query_latency
from batch_audit.local_db import load_db, tracked_transactions
from batch_audit.receipts import ReceiptReconstructor
from batch_audit.rpc import RpcClient, RpcError, eth_block_number
from batch_audit.report import build_report, print_timeline
from batch_audit.scanner import ChunkedLogScanner, ScanError, ScanJob, SourceFilter, scan_sources
from batch_audit.timeline import TimestampResolver, dedupe_transactions, merge_events
from batch_audit.utils import normalize_entity_id, write_json, write_text


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--entity-id", default="", help="batch id string or 0x bytes32 (default: AUDIT_PRODUCT_ID)")
    parser.add_argument("--env-file", default="", help="explicit .env path (default: search from cwd)")
    parser.add_argument("--rpc-url", default="", help="overrides OP_SEPOLIA_RPC_URL")
    parser.add_argument("--db", default="audit_local_db.json")
    parser.add_argument("--timeout-s", type=int, default=45)


def _add_sim_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sim-warmup", type=int, default=3)
    parser.add_argument("--sim-runs", type=int, default=30)
    parser.add_argument("--sim-concurrency", type=int, default=8)
    parser.add_argument("--sim-report-out", default="", help="default: audit_query_latency_<id8>.json")
    parser.add_argument("--sim-report-md", default="", help="optional markdown rendering of the latency report")


def _setup(args: argparse.Namespace) -> Tuple[Settings, List[RpcClient], str, str]:
    settings = load_settings(Path(args.env_file) if args.env_file else None)
    if args.rpc_url:
        settings.primary_rpc = args.rpc_url
    urls = settings.require_endpoints()
    clients = [RpcClient(u, timeout_s=int(args.timeout_s)) for u in urls]
    entity_id_input = args.entity_id or settings.entity_id_input
    entity_id = normalize_entity_id(entity_id_input)
    return settings, clients, entity_id_input, entity_id


def _load_txs(db_path: Path, entity_id: str) -> List[TrackedTransaction]:
    txs = tracked_transactions(load_db(db_path), entity_id)
    return dedupe_transactions(txs)


def _scan_events(
    args: argparse.Namespace,
    settings: Settings,
    clients: List[RpcClient],
    entity_id: str,
    table: Dict[str, str],
) -> Tuple[List[DomainEvent], List[Dict[str, Any]]]:
    to_block = int(args.to_block) or eth_block_number(clients[0])
    from_block = max(0, int(args.from_block))
    if from_block > to_block:
        raise SystemExit(f"from_block {from_block} > to_block {to_block}")

    scanner = ChunkedLogScanner(
        clients,
        sleep_s=max(0, int(args.sleep_ms)) / 1000.0,
        max_requests=int(args.max_requests),
        progress_every=int(args.progress_every),
    )
    stop = steps_observed_predicate(entity_id, table, REQUIRED_STEP_TYPES) if args.stop_when_complete else None
    jobs = [
        ScanJob(
            label="CidRollup",
            source=SourceFilter(settings.contracts["CidRollup"], [topic0_for(CID_ANCHORED), entity_id]),
            from_block=from_block,
            to_block=to_block,
            chunk_size=int(args.chunk_size),
            early_stop=stop,
        ),
        ScanJob(
            label="DocumentRegistry",
            source=SourceFilter(settings.contracts["DocumentRegistry"], [topic0_for(DOCUMENT_ANCHORED), entity_id]),
            from_block=from_block,
            to_block=to_block,
            chunk_size=int(args.chunk_size),
        ),
        ScanJob(
            label="ProcessManager",
            source=SourceFilter(
                settings.contracts["ProcessManager"],
                [[topic0_for(PROCESS_CREATED), topic0_for(PROCESS_STATUS_CHANGED)], entity_id],
            ),
            from_block=from_block,
            to_block=to_block,
            chunk_size=int(args.chunk_size),
        ),
    ]
    print(f"[scan] {len(jobs)} source(s) over blocks {from_block:,}..{to_block:,} chunk={args.chunk_size} endpoints={len(clients)}")
    results = scan_sources(scanner, jobs, max_workers=int(args.scan_workers))

    events: List[DomainEvent] = []
    for r in results:
        decoded = decode_logs(r.records, entity_id, table)
        print(f"[scan:{r.label}] {len(r.records):,} log(s), {len(decoded):,} decoded, requests={r.requests:,}")
        if not r.complete:
            print(f"[scan:{r.label}] WARNING: partial results (request ceiling reached at block {r.scanned_to_block:,})")
        events.extend(decoded)
    return events, [r.bounds() for r in results]


def _write_latency(report: Dict[str, Any], args: argparse.Namespace, entity_id: str) -> None:
    print_latency_tables(report)
    out = Path(args.sim_report_out or f"audit_query_latency_{entity_id[2:10]}.json")
    write_json(out, report)
    print(f"\n[simQuery] Wrote latency report: {out}")
    if args.sim_report_md:
        write_text(Path(args.sim_report_md), render_latency_markdown(report))
        print(f"[simQuery] Wrote latency markdown: {args.sim_report_md}")


def run(args: argparse.Namespace) -> int:
    settings, clients, entity_id_input, entity_id = _setup(args)
    primary = clients[0]
    table = build_signature_table()
    db_path = Path(args.db)

    print(f"RPC (primary): {primary.rpc_url} (+{len(clients) - 1} fallback)")
    print(f"entity id input: {entity_id_input}")
    print(f"entity id (bytes32): {entity_id}")
    print(f"DB: {db_path}")
    for name, addr in settings.contracts.items():
        print(f"{name}: {addr}")

    txs: List[TrackedTransaction] = []
    pending: List[str] = []
    observed: Optional[Dict[str, Optional[int]]] = None
    scans: Optional[List[Dict[str, Any]]] = None

    if args.scan:
        events, scans = _scan_events(args, settings, clients, entity_id, table)
        source = "eth_getLogs"
    else:
        txs = _load_txs(db_path, entity_id)
        source = "receipts"
        if txs:
            print(f"\nReconstructing from {len(txs)} tx receipt(s) (no block scanning)...")
            fetched = ReceiptReconstructor(primary, max_workers=int(args.concurrency)).reconstruct(
                txs, entity_id, table, verbose=True
            )
            events = fetched.events
            pending = fetched.pending
            observed = fetched.observed_bounds()
        else:
            events = []
            print(f"No local DB txs for entity id {entity_id}; pass --scan to search block ranges instead.")

    events = merge_events(events)

    print(f"\n[timestamps] Timestamping {len(events)} event(s)...")
    resolver = TimestampResolver(primary, max_workers=int(args.concurrency))
    resolver.attach(events)
    print(f"[timestamps] {resolver.lookups} block lookup(s)")

    completeness = check_completeness(events, REQUIRED_STEP_TYPES, entity_id)
    report = build_report(
        entity_id_input=entity_id_input,
        entity_id=entity_id,
        events=events,
        completeness=completeness,
        source=source,
        pending=pending,
        observed=observed,
        scans=scans,
        contracts=settings.contracts,
    )

    print(f"\nFound {len(events)} total event(s) for entity id.")
    print(f"Completeness (Produced..Sold present in CidAnchored stepType set): {1 if completeness.is_complete else 0}\n")
    print_timeline(events)

    out = Path(args.out or f"audit_reconstruction_{entity_id[2:10]}.json")
    write_json(out, report)
    print(f"\nWrote {out}")

    if not args.skip_sim and txs:
        sim = simulate_query_latency(
            primary,
            entity_id,
            txs,
            table,
            warmup=int(args.sim_warmup),
            runs=int(args.sim_runs),
            concurrency=int(args.sim_concurrency),
        )
        _write_latency(sim, args, entity_id)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconstruct a batch audit timeline from ledger logs.")
    _add_common_args(parser)
    parser.add_argument("--out", default="", help="default: audit_reconstruction_<id8>.json")
    parser.add_argument("--concurrency", type=int, default=8, help="receipt / timestamp fetch fan-out")
    parser.add_argument("--scan", action="store_true", help="discover logs with chunked eth_getLogs instead of receipts")
    parser.add_argument("--from-block", type=int, default=0)
    parser.add_argument("--to-block", type=int, default=0, help="0 = latest")
    parser.add_argument("--chunk-size", type=int, default=10)
    parser.add_argument("--sleep-ms", type=int, default=120)
    parser.add_argument("--progress-every", type=int, default=200)
    parser.add_argument("--max-requests", type=int, default=50_000)
    parser.add_argument("--scan-workers", type=int, default=1, help="concurrent scans across registries")
    parser.add_argument("--stop-when-complete", action="store_true", help="stop the CidRollup scan once all steps are seen")
    parser.add_argument("--skip-sim", action="store_true", help="skip the query latency simulation")
    _add_sim_args(parser)
    args = parser.parse_args(argv)

    try:
        return run(args)
    except (ConfigError, RpcError, ScanError) as e:
        raise SystemExit(f"fatal: {e}") from e
    except ValueError as e:
        raise SystemExit(f"fatal: invalid input: {e}") from e


def latency_main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Measure cold/hot audit query latency for a batch.")
    _add_common_args(parser)
    _add_sim_args(parser)
    args = parser.parse_args(argv)

    try:
        _settings, clients, _entity_id_input, entity_id = _setup(args)
        txs = _load_txs(Path(args.db), entity_id)
        if not txs:
            raise SystemExit(f"no local DB txs for entity id {entity_id}: nothing to measure")
        report = simulate_query_latency(
            clients[0],
            entity_id,
            txs,
            build_signature_table(),
            warmup=int(args.sim_warmup),
            runs=int(args.sim_runs),
            concurrency=int(args.sim_concurrency),
        )
    except (ConfigError, RpcError) as e:
        raise SystemExit(f"fatal: {e}") from e
    except ValueError as e:
        raise SystemExit(f"fatal: invalid input: {e}") from e
    _write_latency(report, args, entity_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
