from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from Crypto.Hash import keccak


ZERO_WORD = "0x" + "0" * 64
ZERO_ADDRESS = "0x" + "0" * 40


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_text(path: Path, text: str) -> None:
    ensure_dir(path.parent)
    path.write_text(text, encoding="utf-8")


def write_json(path: Path, data: Any) -> None:
    ensure_dir(path.parent)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def env(name: str, default: str) -> str:
    val = os.getenv(name)
    return val.strip() if val and val.strip() else default


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def iso_from_ts(ts: Optional[int]) -> str:
    if ts is None:
        return "unknown-time"
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


def keccak_hex(text: str) -> str:
    """keccak-256 of the UTF-8 bytes, as a 0x-prefixed lowercase 32-byte word."""
    h = keccak.new(digest_bits=256)
    h.update(text.encode("utf-8"))
    return "0x" + h.hexdigest()


def is_bytes32_hex(value: str) -> bool:
    v = value.strip()
    if not v.startswith("0x") or len(v) != 66:
        return False
    try:
        int(v[2:], 16)
    except ValueError:
        return False
    return True


def normalize_entity_id(value: str) -> str:
    # A 0x-prefixed 32-byte word is taken as-is; anything else is hashed the way the registries do.
    v = value.strip()
    if not v:
        raise ValueError("empty entity id")
    if is_bytes32_hex(v):
        return v.lower()
    return keccak_hex(v)


def normalize_address(addr: str) -> str:
    a = str(addr).strip().lower()
    if not a.startswith("0x") or len(a) != 42:
        raise ValueError(f"invalid address: {addr}")
    int(a[2:], 16)
    return a


def hex_to_int(h: Optional[str]) -> int:
    if h is None:
        return 0
    if isinstance(h, int):
        return h
    s = str(h).strip()
    if not s or s == "0x":
        return 0
    return int(s, 16)


def to_hex_qty(n: int) -> str:
    if int(n) < 0:
        raise ValueError(f"negative quantity: {n}")
    return hex(int(n))
