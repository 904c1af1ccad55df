from __future__ import annotations

import pytest

from fakes import ENTITY_ID, FakeClient, cid_log, no_sleep

from batch_audit.completeness import steps_observed_predicate
from batch_audit.decoder import build_signature_table, topic0_for
from batch_audit.rpc import RpcError
from batch_audit.scanner import ChunkedLogScanner, ScanError, ScanJob, ScanProgress, SourceFilter, scan_sources


SOURCE = SourceFilter("0x" + "cc" * 20, [topic0_for("CidAnchored"), ENTITY_ID])


def window(params):
    return int(params["fromBlock"], 16), int(params["toBlock"], 16)


def make_scanner(endpoints, **kw):
    kw.setdefault("sleep_s", 0)
    kw.setdefault("on_progress", None)
    kw.setdefault("sleep", no_sleep)
    kw.setdefault("max_tries", 1)
    return ChunkedLogScanner(endpoints, **kw)


class RangeLimitedLogs:
    """Rejects windows wider than `limit` blocks; returns one CidAnchored log at each block in `hits`."""

    def __init__(self, limit, hits=()):
        self.limit = limit
        self.hits = dict(hits)
        self.windows = []

    def __call__(self, params):
        a, b = window(params)
        self.windows.append((a, b))
        if b - a + 1 > self.limit:
            raise RpcError("query returned more than 10000 results", code=-32005)
        return [cid_log(step, block=blk, index=0) for blk, step in sorted(self.hits.items()) if a <= blk <= b]


class TestChunking:
    def test_walks_range_in_chunks(self):
        handler = RangeLimitedLogs(limit=1000, hits={105: 1, 350: 2})
        client = FakeClient(get_logs=handler)

        result = make_scanner([client]).scan("cid", SOURCE, 100, 399, 100)

        assert handler.windows == [(100, 199), (200, 299), (300, 399)]
        assert [r.block_number for r in result.records] == [105, 350]
        assert result.complete
        assert result.chunks == 3
        assert result.scanned_to_block == 399

    def test_range_error_halves_and_retries_same_window(self):
        handler = RangeLimitedLogs(limit=50)
        client = FakeClient(get_logs=handler)

        result = make_scanner([client]).scan("cid", SOURCE, 100, 199, 100)

        assert handler.windows[0] == (100, 199)
        assert handler.windows[1] == (100, 149)
        assert handler.windows[2] == (150, 199)
        assert result.final_chunk_size == 50
        assert result.complete

    def test_chunk_size_never_grows_back(self):
        handler = RangeLimitedLogs(limit=30)
        client = FakeClient(get_logs=handler)

        result = make_scanner([client]).scan("cid", SOURCE, 0, 199, 128)

        sizes = [b - a + 1 for a, b in handler.windows]
        successful = [s for s in sizes if s <= 30]
        assert max(successful) == 16
        assert result.final_chunk_size == 16
        assert result.scanned_to_block == 199

    def test_passes_filter_to_endpoint(self):
        client = FakeClient(get_logs=RangeLimitedLogs(limit=10))
        make_scanner([client]).scan("cid", SOURCE, 5, 6, 10)

        method, params = client.calls[0]
        assert method == "eth_getLogs"
        assert params[0]["address"] == SOURCE.address
        assert params[0]["topics"] == SOURCE.topics
        assert params[0]["fromBlock"] == "0x5"
        assert params[0]["toBlock"] == "0x6"

    def test_rejects_zero_chunk(self):
        with pytest.raises(ValueError):
            make_scanner([FakeClient(get_logs=RangeLimitedLogs(10))]).scan("cid", SOURCE, 0, 1, 0)


class TestFailover:
    def test_second_endpoint_used_when_first_fails(self):
        def down(_params):
            raise RpcError("HTTP 503: service unavailable", status_code=503)

        first = FakeClient(get_logs=down, name="a")
        second = FakeClient(get_logs=RangeLimitedLogs(limit=100, hits={3: 1}), name="b")

        result = make_scanner([first, second]).scan("cid", SOURCE, 0, 9, 10)

        assert first.count("eth_getLogs") == 1
        assert second.count("eth_getLogs") == 1
        assert len(result.records) == 1
        assert result.final_chunk_size == 10

    def test_fatal_when_every_endpoint_fails_hard(self):
        def bad(_params):
            raise RpcError("invalid params", code=-32602)

        with pytest.raises(ScanError, match="all 2 endpoint"):
            make_scanner([FakeClient(get_logs=bad), FakeClient(get_logs=bad)]).scan("cid", SOURCE, 0, 9, 10)

    def test_fatal_when_range_error_persists_at_chunk_one(self):
        def always_too_wide(_params):
            raise RpcError("block range too wide")

        with pytest.raises(ScanError):
            make_scanner([FakeClient(get_logs=always_too_wide)]).scan("cid", SOURCE, 0, 9, 4)

    def test_no_endpoints(self):
        with pytest.raises(ScanError):
            ChunkedLogScanner([])


class TestCeilingAndEarlyStop:
    def test_request_ceiling_returns_partial(self):
        handler = RangeLimitedLogs(limit=10, hits={0: 1, 25: 2})
        client = FakeClient(get_logs=handler)

        result = make_scanner([client], max_requests=2).scan("cid", SOURCE, 0, 99, 10)

        assert result.requests == 2
        assert result.hit_request_ceiling
        assert not result.complete
        assert result.scanned_to_block == 19
        assert [r.block_number for r in result.records] == [0]

    def test_early_stop_when_required_steps_seen(self):
        hits = {10 + i: i + 1 for i in range(6)}
        hits[500] = 1
        handler = RangeLimitedLogs(limit=1000, hits=hits)
        client = FakeClient(get_logs=handler)
        stop = steps_observed_predicate(ENTITY_ID, build_signature_table())

        result = make_scanner([client]).scan("cid", SOURCE, 0, 999, 10, early_stop=stop)

        assert result.stopped_early
        assert result.complete
        assert result.scanned_to_block == 19
        assert len(handler.windows) == 2

    def test_inter_chunk_delay(self):
        delays = []
        client = FakeClient(get_logs=RangeLimitedLogs(limit=10))
        make_scanner([client], sleep_s=0.12, sleep=delays.append).scan("cid", SOURCE, 0, 29, 10)
        assert delays == [0.12, 0.12]


class TestProgress:
    def test_progress_callbacks(self):
        seen = []
        client = FakeClient(get_logs=RangeLimitedLogs(limit=10))

        make_scanner([client], on_progress=seen.append, progress_every=2).scan("cid", SOURCE, 0, 49, 10)

        assert [p.chunks_done for p in seen] == [1, 2, 4, 5]
        assert seen[-1].pct == 100.0
        assert seen[0].pct == pytest.approx(20.0)

    def test_eta(self):
        p = ScanProgress("x", 0, 99, 50, 10, 5, 5, 0, elapsed_s=10.0)
        assert p.eta_s == pytest.approx(10.0)
        assert ScanProgress("x", 0, 99, 0, 10, 0, 0, 0, elapsed_s=0.0).eta_s is None


class TestScanSources:
    def test_concurrent_scans_keep_job_order(self):
        a = SourceFilter("0x" + "aa" * 20, SOURCE.topics)
        b = SourceFilter("0x" + "bb" * 20, SOURCE.topics)

        def per_address(params):
            blk = 1 if params["address"] == a.address else 2
            lo, hi = window(params)
            return [cid_log(1, block=blk, index=0)] if lo <= blk <= hi else []

        client = FakeClient(get_logs=per_address)
        jobs = [ScanJob("a", a, 0, 9, 10), ScanJob("b", b, 0, 9, 10)]

        results = scan_sources(make_scanner([client]), jobs, max_workers=2)

        assert [r.label for r in results] == ["a", "b"]
        assert results[0].records[0].block_number == 1
        assert results[1].records[0].block_number == 2


class TestRateLimitAndMalformed:
    def test_rate_limit_after_backoff_halves_window(self):
        windows = []

        def throttled(params):
            lo, hi = window(params)
            windows.append((lo, hi))
            if hi - lo + 1 > 5:
                raise RpcError("HTTP 429: Too Many Requests", status_code=429)
            return []

        delays = []
        scanner = make_scanner([FakeClient(get_logs=throttled)], max_tries=2, sleep=delays.append)

        result = scanner.scan("cid", SOURCE, 0, 9, 10)

        assert windows == [(0, 9), (0, 9), (0, 4), (5, 9)]
        assert len(delays) == 1
        assert 0.85 <= delays[0] <= 1.15
        assert result.final_chunk_size == 5
        assert result.complete

    def test_null_log_entry_is_skipped(self):
        client = FakeClient(get_logs=lambda _params: [None, "junk", cid_log(1, block=1, index=0)])

        result = make_scanner([client]).scan("cid", SOURCE, 0, 9, 10)

        assert [r.block_number for r in result.records] == [1]
        assert result.complete

    def test_fetch_logs_returns_records(self):
        handler = RangeLimitedLogs(limit=100, hits={3: 1, 8: 2})
        records = make_scanner([FakeClient(get_logs=handler)]).fetch_logs(SOURCE, 0, 9, 10)
        assert [r.block_number for r in records] == [3, 8]
