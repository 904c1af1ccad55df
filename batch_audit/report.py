from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from batch_audit.completeness import CompletenessReport
from batch_audit.events import (
    CID_ANCHORED,
    DOCUMENT_ANCHORED,
    PROCESS_CREATED,
    PROCESS_STATUS_CHANGED,
    PROCESS_STATUS_NAMES,
    STEP_TYPE_NAMES,
    CidAnchored,
    DocumentAnchored,
    DomainEvent,
    ProcessCreated,
    ProcessStatusChanged,
)
from batch_audit.utils import iso_from_ts, utc_now_iso


def count_by_kind(events: Sequence[DomainEvent]) -> Dict[str, int]:
    c = Counter(e.kind for e in events)
    return {
        "total_events": len(events),
        "cid_anchors": c.get(CID_ANCHORED, 0),
        "document_anchors": c.get(DOCUMENT_ANCHORED, 0),
        "process_events": c.get(PROCESS_CREATED, 0) + c.get(PROCESS_STATUS_CHANGED, 0),
        "by_kind": {k: c[k] for k in sorted(c)},
    }


def event_to_json(e: DomainEvent) -> Dict[str, Any]:
    out = e.to_dict()
    out["timestamp_iso"] = iso_from_ts(e.timestamp) if e.timestamp is not None else None
    return out


def build_report(
    *,
    entity_id_input: str,
    entity_id: str,
    events: Sequence[DomainEvent],
    completeness: CompletenessReport,
    source: str,
    pending: Optional[List[str]] = None,
    observed: Optional[Dict[str, Optional[int]]] = None,
    scans: Optional[List[Dict[str, Any]]] = None,
    contracts: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "generated_at_utc": utc_now_iso(),
        "entity_id_input": entity_id_input,
        "entity_id": entity_id,
        "source": source,
        "counts": count_by_kind(events),
        "completeness": completeness.to_dict(),
        "pending_transactions": list(pending or []),
    }
    if observed is not None:
        summary["observed"] = observed
    if scans is not None:
        summary["scans"] = scans
        summary["scans_complete"] = all(not s.get("hit_request_ceiling") for s in scans)
    if contracts is not None:
        summary["contracts"] = contracts
    return {"summary": summary, "events": [event_to_json(e) for e in events]}


def format_event_line(e: DomainEvent) -> str:
    iso = iso_from_ts(e.timestamp)
    tx = f"{e.transaction_hash[:10]}..."
    if isinstance(e, CidAnchored):
        return (
            f"{iso}  [CidAnchored] stepType={e.step_type}({STEP_TYPE_NAMES.get(e.step_type, '?')}) "
            f"stepId={e.step_id[:10]}... actor={e.actor_address} cidHash={e.cid_hash[:10]}... tx={tx}"
        )
    if isinstance(e, DocumentAnchored):
        return (
            f"{iso}  [DocumentAnchored] docType={e.doc_type} stepId={e.step_id[:10]}... "
            f"actor={e.actor_address} cidHash={e.cid_hash[:10]}... tx={tx}"
        )
    if isinstance(e, ProcessCreated):
        return f"{iso}  [ProcessCreated] orgIdHash={e.org_id_hash[:10]}... tx={tx}"
    if isinstance(e, ProcessStatusChanged):
        prev = PROCESS_STATUS_NAMES.get(e.previous_status, str(e.previous_status))
        new = PROCESS_STATUS_NAMES.get(e.new_status, str(e.new_status))
        return f"{iso}  [ProcessStatusChanged] {prev} -> {new} actor={e.actor_address} tx={tx}"
    return f"{iso}  [{e.kind}] tx={tx}"


def print_timeline(events: Sequence[DomainEvent]) -> None:
    for e in events:
        print(format_event_line(e))
