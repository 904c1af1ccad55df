from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from batch_audit.decoder import decode_logs
from batch_audit.events import STEP_TYPE_NAMES, CidAnchored, DomainEvent, RawLogRecord


# Produced, Processed, Shipped, Received, AtRetail, Sold
REQUIRED_STEP_TYPES: Tuple[int, ...] = (1, 2, 3, 4, 5, 6)


@dataclass(frozen=True)
class CompletenessReport:
    required_steps: Tuple[int, ...]
    observed_steps: Tuple[int, ...]
    missing_steps: Tuple[int, ...]
    is_complete: bool

    def to_dict(self) -> Dict[str, Any]:
        def named(steps: Iterable[int]) -> List[Dict[str, Any]]:
            return [{"step_type": s, "name": STEP_TYPE_NAMES.get(s, "?")} for s in steps]

        return {
            "required_step_types": named(self.required_steps),
            "observed_step_types": named(self.observed_steps),
            "missing_step_types": named(self.missing_steps),
            "is_complete": self.is_complete,
        }


def observed_steps(events: Iterable[DomainEvent], entity_id: str | None = None) -> set:
    return {
        e.step_type
        for e in events
        if isinstance(e, CidAnchored) and (entity_id is None or e.entity_id == entity_id.lower())
    }


def check_completeness(
    events: Sequence[DomainEvent],
    required: Sequence[int] = REQUIRED_STEP_TYPES,
    entity_id: str | None = None,
) -> CompletenessReport:
    seen = observed_steps(events, entity_id)
    return CompletenessReport(
        required_steps=tuple(required),
        observed_steps=tuple(sorted(seen)),
        missing_steps=tuple(s for s in required if s not in seen),
        is_complete=all(s in seen for s in required),
    )


def steps_observed_predicate(
    entity_id: str,
    table: Mapping[str, str],
    required: Sequence[int] = REQUIRED_STEP_TYPES,
) -> Callable[[List[RawLogRecord]], bool]:
    """Early-stop predicate for a scan: true once every required step has been anchored."""
    seen: set = set()
    consumed = [0]

    def predicate(records: List[RawLogRecord]) -> bool:
        fresh = records[consumed[0] :]
        consumed[0] = len(records)
        seen.update(observed_steps(decode_logs(fresh, entity_id, table), entity_id))
        return all(s in seen for s in required)

    return predicate
