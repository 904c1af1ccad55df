from __future__ import annotations

import itertools

import pytest

from fakes import ENTITY_ID, FakeClient, bytes32, cid_log, make_log, no_sleep, receipt

from batch_audit.completeness import check_completeness
from batch_audit.decoder import build_signature_table, decode_logs
from batch_audit.events import TrackedTransaction
from batch_audit.latency import (
    percentile,
    render_latency_markdown,
    run_query_once,
    simulate_query_latency,
    summarize,
)


TABLE = build_signature_table()


def events_with_steps(steps, entity_id=ENTITY_ID):
    return decode_logs([cid_log(s, block=10 + i, index=0, entity_id=entity_id) for i, s in enumerate(steps)], entity_id, TABLE)


class TestCompleteness:
    def test_all_steps_observed(self):
        report = check_completeness(events_with_steps([1, 2, 3, 4, 5, 6]))
        assert report.is_complete
        assert report.missing_steps == ()
        assert report.observed_steps == (1, 2, 3, 4, 5, 6)

    def test_missing_last_step(self):
        report = check_completeness(events_with_steps([1, 2, 3, 4, 5]))
        assert not report.is_complete
        assert set(report.missing_steps) == {6}

    def test_only_cid_anchored_counts(self):
        doc = make_log("DocumentAnchored", block=99, index=0, data_words=[bytes32("d")[2:], format(6, "064x")])
        events = events_with_steps([1, 2, 3, 4, 5]) + decode_logs([doc], ENTITY_ID, TABLE)
        assert check_completeness(events).missing_steps == (6,)

    def test_superset_is_complete(self):
        assert check_completeness(events_with_steps([0, 1, 2, 3, 4, 5, 6, 6])).is_complete

    def test_other_entity_ignored_when_entity_given(self):
        events = events_with_steps([1, 2, 3, 4, 5, 6], entity_id=bytes32("other"))
        assert not check_completeness(events, entity_id=ENTITY_ID).is_complete

    def test_to_dict_names_steps(self):
        out = check_completeness(events_with_steps([1])).to_dict()
        assert out["missing_step_types"][-1] == {"step_type": 6, "name": "Sold"}
        assert out["is_complete"] is False


class TestPercentiles:
    def test_nearest_rank_on_five(self):
        values = [50, 10, 40, 20, 30]
        assert percentile(values, 50) == 30
        assert percentile(values, 95) == 50

    def test_bounds(self):
        assert percentile([7], 95) == 7
        assert percentile([1, 2, 3], 0) == 1
        assert percentile([1, 2, 3], 100) == 3
        assert percentile([], 50) is None

    def test_summarize(self):
        s = summarize([10, 20, 30, 40, 50])
        assert s == {"n": 5, "min": 10, "max": 50, "mean": 30, "p50": 30, "p95": 50}
        assert summarize([])["mean"] is None


def _pipeline_client():
    tx1 = "0x" + "01" * 32
    tx2 = "0x" + "02" * 32
    client = FakeClient(
        receipts={
            tx1: receipt(100, [cid_log(1, block=100, index=3, tx=tx1), cid_log(2, block=100, index=1, tx=tx1)], tx1),
            tx2: receipt(101, [cid_log(3, block=101, index=0, tx=tx2)], tx2),
        },
        block_timestamps={100: 1000, 101: 1002},
    )
    return client, [TrackedTransaction(tx1, "batch"), TrackedTransaction(tx2, "status")]


def fake_clock(step=0.001):
    counter = itertools.count()
    return lambda: next(counter) * step


class TestRunQueryOnce:
    def test_phases_and_payload(self):
        client, txs = _pipeline_client()
        run = run_query_once(client, ENTITY_ID, txs, TABLE, concurrency=2, clock=fake_clock(), sleep=no_sleep)

        assert run.tx_count == 2
        assert run.event_count == 3
        assert run.unique_blocks == 2
        assert set(run.phase_ms) == {"receipts_ms", "decode_ms", "sort_ms", "timestamps_ms", "output_ms"}
        assert all(v > 0 for v in run.phase_ms.values())
        assert run.total_ms >= sum(run.phase_ms.values())

    def test_pending_transactions_reported(self):
        client, txs = _pipeline_client()
        txs = txs + [TrackedTransaction("0x" + "03" * 32, "unmined")]
        run = run_query_once(client, ENTITY_ID, txs, TABLE, sleep=no_sleep)
        assert run.pending == ["0x" + "03" * 32]
        assert run.event_count == 3


class TestSimulation:
    def test_cold_refetches_hot_reuses(self):
        client, txs = _pipeline_client()

        report = simulate_query_latency(
            client, ENTITY_ID, txs, TABLE, warmup=2, runs=5, concurrency=2, clock=fake_clock(), sleep=no_sleep
        )

        # cold: 7 runs x 2 receipts, hot: fetched once during warm-up
        assert client.count("eth_getTransactionReceipt") == 7 * 2 + 2
        assert client.count("eth_getBlockByNumber") == 7 * 2 + 2
        for mode in ("cold", "hot"):
            assert report[mode]["totals"]["n"] == 5
            assert set(report[mode]["phases"]) == {"receipts", "decode", "sort", "timestamps"}
            assert report[mode]["payload"] == {"tx_count": 2, "event_count": 3, "unique_blocks": 2}
        assert report["warmup"] == 2
        assert report["runs"] == 5

    def test_zero_runs(self):
        client, txs = _pipeline_client()
        report = simulate_query_latency(client, ENTITY_ID, txs, TABLE, warmup=0, runs=0, sleep=no_sleep)
        assert report["cold"]["totals"]["n"] == 0
        assert report["cold"]["totals"]["p50"] is None
        assert report["cold"]["payload"]["tx_count"] == 2

    def test_markdown(self):
        client, txs = _pipeline_client()
        report = simulate_query_latency(client, ENTITY_ID, txs, TABLE, warmup=0, runs=2, clock=fake_clock(), sleep=no_sleep)
        md = render_latency_markdown(report)
        assert "## COLD" in md and "## HOT" in md
        assert "| timestamps | 2 |" in md

    @pytest.mark.parametrize("runs", [1, 3])
    def test_hot_mode_fetches_each_receipt_once(self, runs):
        client, txs = _pipeline_client()
        simulate_query_latency(client, ENTITY_ID, txs, TABLE, warmup=1, runs=runs, sleep=no_sleep)
        cold_calls = (1 + runs) * 2
        assert client.count("eth_getTransactionReceipt") == cold_calls + 2

    def test_note_states_percentile_rule(self):
        client, txs = _pipeline_client()
        report = simulate_query_latency(client, ENTITY_ID, txs, TABLE, warmup=0, runs=1, sleep=no_sleep)
        assert "nearest-rank" in report["note"]

    def test_p95_of_thirty_runs_takes_rank_29(self):
        assert percentile(list(range(1, 31)), 95) == 29
