"""
Schema-free log decoding.

Dispatch is a closed table keyed by topic0 (keccak of the canonical event
signature). Each decoder reads indexed values from fixed topic slots and the
non-indexed values from fixed 32-byte data words. A missing or short word reads
as the zero word, so a truncated blob yields zero values (e.g. the zero actor
address) instead of being rejected.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from batch_audit.events import (
    CID_ANCHORED,
    DOCUMENT_ANCHORED,
    EVENT_SIGNATURES,
    PROCESS_CREATED,
    PROCESS_STATUS_CHANGED,
    SOURCE_CONTRACTS,
    CidAnchored,
    DocumentAnchored,
    DomainEvent,
    ProcessCreated,
    ProcessStatusChanged,
    RawLogRecord,
)
from batch_audit.utils import ZERO_WORD, keccak_hex


def build_signature_table(signatures: Mapping[str, str] = EVENT_SIGNATURES) -> Dict[str, str]:
    """topic0 hash -> event kind."""
    return {keccak_hex(sig): kind for kind, sig in signatures.items()}


def topic0_for(kind: str, signatures: Mapping[str, str] = EVENT_SIGNATURES) -> str:
    return keccak_hex(signatures[kind])


def split_words(data_hex: str) -> List[str]:
    h = data_hex[2:] if data_hex.startswith("0x") else data_hex
    # trailing partial word is dropped
    return ["0x" + h[i : i + 64].lower() for i in range(0, len(h) - 63, 64)]


def _word(words: List[str], i: int) -> str:
    return words[i] if i < len(words) else ZERO_WORD


def _topic_word(record: RawLogRecord, i: int) -> str:
    t = record.topic(i)
    if not t or len(t) != 66:
        return ZERO_WORD
    return t


def word_to_int(word: str) -> int:
    return int(word, 16)


def word_to_address(word: str) -> str:
    h = word[2:] if word.startswith("0x") else word
    return "0x" + h[-40:].rjust(40, "0").lower()


def _common(record: RawLogRecord, entity_id: str, kind: str) -> Dict[str, Any]:
    return {
        "block_number": record.block_number,
        "log_index": record.log_index,
        "transaction_hash": record.transaction_hash,
        "entity_id": entity_id,
        "source_contract": SOURCE_CONTRACTS[kind],
    }


def _decode_cid_anchored(record: RawLogRecord, entity_id: str) -> CidAnchored:
    words = split_words(record.data)
    return CidAnchored(
        **_common(record, entity_id, CID_ANCHORED),
        step_id=_topic_word(record, 2),
        org_id_hash=_topic_word(record, 3),
        cid_hash=_word(words, 0),
        step_type=word_to_int(_word(words, 1)),
        actor_address=word_to_address(_word(words, 2)),
    )


def _decode_document_anchored(record: RawLogRecord, entity_id: str) -> DocumentAnchored:
    words = split_words(record.data)
    return DocumentAnchored(
        **_common(record, entity_id, DOCUMENT_ANCHORED),
        step_id=_topic_word(record, 2),
        org_id_hash=_topic_word(record, 3),
        cid_hash=_word(words, 0),
        doc_type=word_to_int(_word(words, 1)),
        actor_address=word_to_address(_word(words, 2)),
    )


def _decode_process_created(record: RawLogRecord, entity_id: str) -> ProcessCreated:
    return ProcessCreated(
        **_common(record, entity_id, PROCESS_CREATED),
        org_id_hash=_topic_word(record, 2),
    )


def _decode_process_status_changed(record: RawLogRecord, entity_id: str) -> ProcessStatusChanged:
    words = split_words(record.data)
    return ProcessStatusChanged(
        **_common(record, entity_id, PROCESS_STATUS_CHANGED),
        org_id_hash=_topic_word(record, 2),
        previous_status=word_to_int(_word(words, 0)),
        new_status=word_to_int(_word(words, 1)),
        actor_address=word_to_address(_word(words, 2)),
    )


DECODERS: Dict[str, Callable[[RawLogRecord, str], DomainEvent]] = {
    CID_ANCHORED: _decode_cid_anchored,
    DOCUMENT_ANCHORED: _decode_document_anchored,
    PROCESS_CREATED: _decode_process_created,
    PROCESS_STATUS_CHANGED: _decode_process_status_changed,
}


def decode_log(record: RawLogRecord, entity_id: str, table: Mapping[str, str]) -> Optional[DomainEvent]:
    """
    Decode one record, or return None when topic0 is not in `table` or topic1
    (the entity-id filter slot) is not `entity_id`.

    Raises ValueError only for a known signature whose data words are not hex.
    """
    kind = table.get((record.topic(0) or "").lower())
    if kind is None:
        return None
    if (record.topic(1) or "").lower() != entity_id.lower():
        return None
    return DECODERS[kind](record, entity_id.lower())


def decode_logs(
    logs: Iterable[Any],
    entity_id: str,
    table: Mapping[str, str],
) -> List[DomainEvent]:
    """Decode a batch of raw logs (RawLogRecord or RPC dicts), skipping anything malformed."""
    events: List[DomainEvent] = []
    for log in logs:
        try:
            record = log if isinstance(log, RawLogRecord) else RawLogRecord.from_rpc(log)
            ev = decode_log(record, entity_id, table)
        except (ValueError, TypeError, AttributeError):
            continue
        if ev is not None:
            events.append(ev)
    return events
