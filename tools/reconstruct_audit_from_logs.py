#!/usr/bin/env python3
"""
Reconstruct an auditable batch timeline from on-chain logs (receipts first,
chunked eth_getLogs with --scan), then measure cold/hot audit query latency.

Needs the package installed (`pip install -e .`); equivalent to the
`reconstruct-audit` console script.
"""

from __future__ import annotations

from batch_audit.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
