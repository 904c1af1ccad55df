"""
Read-only view of the local transaction store (`audit_local_db.json`).

Layout, keyed by the bytes32 entity id:

    {"version": 1, "generatedAt": "...", "products": {
        "0x<entity id>": {"productIdInput": "...", "productId": "0x...",
                          "contractAddresses": {...},
                          "txs": [{"txHash": "0x...", "purpose": "...", "createdAt": "..."}],
                          "observed": {"minBlock": 1, "maxBlock": 2}}}}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from batch_audit.events import TrackedTransaction
from batch_audit.utils import read_json


def empty_db() -> Dict[str, Any]:
    return {"version": 1, "products": {}}


def load_db(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return empty_db()
    try:
        db = read_json(path)
    except json.JSONDecodeError as e:
        raise ValueError(f"local tx store is not valid JSON: {path}: {e}") from e
    if not isinstance(db, dict):
        raise ValueError(f"local tx store must be a JSON object: {path}")
    if not isinstance(db.get("products"), dict):
        db["products"] = {}
    return db


def tracked_transactions(db: Dict[str, Any], entity_id: str) -> List[TrackedTransaction]:
    product = db.get("products", {}).get(entity_id.lower())
    if product is None:
        # stores written by hand may not lower-case the key
        for key, value in db.get("products", {}).items():
            if str(key).lower() == entity_id.lower():
                product = value
                break
    if not isinstance(product, dict):
        return []
    out: List[TrackedTransaction] = []
    for t in product.get("txs") or []:
        if not isinstance(t, dict) or not t.get("txHash"):
            continue
        out.append(
            TrackedTransaction(
                transaction_hash=str(t["txHash"]),
                purpose=str(t.get("purpose") or ""),
                recorded_at=str(t.get("createdAt") or ""),
            )
        )
    return out
