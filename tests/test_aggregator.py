import threading

from core.aggregator import EventAggregator, IngestResult
from core.models import Chain, ChainStats


def test_duplicate_changes_stats_once(event_factory):
    agg = EventAggregator()
    ev = event_factory("sig1", total="500")
    assert agg.ingest(ev) is IngestResult.ACCEPTED
    assert agg.ingest(ev) is IngestResult.DUPLICATE
    assert agg.stats()[Chain.SOLANA] == ChainStats("500", 1)
    assert len(agg.snapshot().recent_events) == 1
    assert agg.summary["dedupe"] == 1


def test_same_hash_on_other_chain_is_distinct(event_factory):
    agg = EventAggregator()
    agg.ingest(event_factory("h", chain=Chain.SOLANA))
    assert agg.ingest(event_factory("h", chain=Chain.ETHEREUM)) is IngestResult.ACCEPTED


def test_totals_never_decrease_with_out_of_order_arrival(event_factory):
    agg = EventAggregator()
    agg.ingest(event_factory("new", total="900"))
    agg.ingest(event_factory("old", total="400"))
    stats = agg.stats()[Chain.SOLANA]
    assert stats.total_burned == "900"
    assert stats.buyback_count == 2


def test_window_keeps_most_recent_by_arrival(event_factory):
    agg = EventAggregator(window_size=50)
    for i in range(51):
        agg.ingest(event_factory(f"sig{i}", total=str(i)))
    recent = agg.snapshot().recent_events
    assert len(recent) == 50
    assert recent[0].tx_hash == "sig50"
    assert recent[-1].tx_hash == "sig1"
    assert "sig0" not in {e.tx_hash for e in recent}


def test_evicted_event_still_deduped(event_factory):
    agg = EventAggregator(window_size=2)
    for i in range(5):
        agg.ingest(event_factory(f"sig{i}"))
    assert agg.ingest(event_factory("sig0")) is IngestResult.DUPLICATE
    assert agg.stats()[Chain.SOLANA].buyback_count == 5


def test_snapshot_limit(event_factory):
    agg = EventAggregator()
    for i in range(10):
        agg.ingest(event_factory(f"sig{i}"))
    assert [e.tx_hash for e in agg.snapshot(limit=3).recent_events] == ["sig9", "sig8", "sig7"]


def test_concurrent_ingest_counts_each_event_once(event_factory):
    agg = EventAggregator(window_size=10)
    events = [event_factory(f"sig{i}", total=str(i)) for i in range(200)]

    def worker():
        for ev in events:
            agg.ingest(ev)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = agg.stats()[Chain.SOLANA]
    assert stats.buyback_count == 200
    assert stats.total_burned == "199"
