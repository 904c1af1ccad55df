"""
Record and event types for batch audit reconstruction.

A `RawLogRecord` is one log entry exactly as the ledger reports it (topics and
data are 0x-prefixed hex). A `DomainEvent` is one of the four decoded variants;
all share the `(block_number, log_index)` ordering key and the entity id the
run was filtered to. `timestamp` stays None until timestamp resolution runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from batch_audit.utils import hex_to_int


CID_ANCHORED = "CidAnchored"
DOCUMENT_ANCHORED = "DocumentAnchored"
PROCESS_CREATED = "ProcessCreated"
PROCESS_STATUS_CHANGED = "ProcessStatusChanged"

EVENT_SIGNATURES: Dict[str, str] = {
    CID_ANCHORED: "CidAnchored(bytes32,bytes32,bytes32,uint8,bytes32,address)",
    DOCUMENT_ANCHORED: "DocumentAnchored(bytes32,bytes32,bytes32,uint8,bytes32,address)",
    PROCESS_CREATED: "ProcessCreated(bytes32,bytes32)",
    PROCESS_STATUS_CHANGED: "ProcessStatusChanged(bytes32,uint8,uint8,bytes32,address)",
}

SOURCE_CONTRACTS: Dict[str, str] = {
    CID_ANCHORED: "CidRollup",
    DOCUMENT_ANCHORED: "DocumentRegistry",
    PROCESS_CREATED: "ProcessManager",
    PROCESS_STATUS_CHANGED: "ProcessManager",
}

STEP_TYPE_NAMES: Dict[int, str] = {
    0: "Unknown",
    1: "Produced",
    2: "Processed",
    3: "Shipped",
    4: "Received",
    5: "AtRetail",
    6: "Sold",
}

PROCESS_STATUS_NAMES: Dict[int, str] = {
    0: "Unknown",
    1: "Created",
    2: "InTransit",
    3: "AtRetail",
    4: "Sold",
    5: "Certified",
    6: "Suspended",
    7: "Revoked",
}


@dataclass(frozen=True)
class RawLogRecord:
    source_address: str
    topics: Tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, log: Dict[str, Any]) -> "RawLogRecord":
        """Build from an `eth_getLogs` / receipt log object. Raises ValueError on non-hex quantities or a non-object entry."""
        if not isinstance(log, dict):
            raise ValueError(f"log entry is not an object: {type(log).__name__}")
        topics = tuple(str(t).lower() for t in (log.get("topics") or []))
        return cls(
            source_address=str(log.get("address") or "").lower(),
            topics=topics,
            data=str(log.get("data") or "0x"),
            block_number=hex_to_int(log.get("blockNumber")),
            transaction_hash=str(log.get("transactionHash") or "").lower(),
            log_index=hex_to_int(log.get("logIndex")),
        )

    def topic(self, i: int) -> Optional[str]:
        return self.topics[i] if i < len(self.topics) else None


@dataclass(kw_only=True)
class AuditEvent:
    block_number: int
    log_index: int
    transaction_hash: str
    entity_id: str
    source_contract: str
    timestamp: Optional[int] = None

    kind = "AuditEvent"

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind}
        for k, v in self.__dict__.items():
            out[k] = v
        return out


@dataclass(kw_only=True)
class CidAnchored(AuditEvent):
    step_id: str
    org_id_hash: str
    cid_hash: str
    step_type: int
    actor_address: str

    kind = CID_ANCHORED


@dataclass(kw_only=True)
class DocumentAnchored(AuditEvent):
    step_id: str
    org_id_hash: str
    cid_hash: str
    doc_type: int
    actor_address: str

    kind = DOCUMENT_ANCHORED


@dataclass(kw_only=True)
class ProcessCreated(AuditEvent):
    org_id_hash: str

    kind = PROCESS_CREATED


@dataclass(kw_only=True)
class ProcessStatusChanged(AuditEvent):
    org_id_hash: str
    previous_status: int
    new_status: int
    actor_address: str

    kind = PROCESS_STATUS_CHANGED


DomainEvent = Union[CidAnchored, DocumentAnchored, ProcessCreated, ProcessStatusChanged]


@dataclass(frozen=True)
class TrackedTransaction:
    transaction_hash: str
    purpose: str = ""
    recorded_at: str = ""
