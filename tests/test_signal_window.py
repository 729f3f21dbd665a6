"""Per-subject sliding window used for escalation."""

import threading

from apps.reconciler.services.signal_window import SignalWindowStore, WindowEntry

from conftest import at


def entry(origin: str, severity: float, seconds: float) -> WindowEntry:
    return WindowEntry(origin_id=origin, severity=severity, observed_at=at(seconds))


class TestSignalWindow:

    def test_counts_signals_within_window(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.3, 0))
        stats = store.record("ns/a", entry("s2", 0.4, 30))

        assert stats.count == 2
        assert stats.max_severity == 0.4
        assert stats.severities == [0.3, 0.4]

    def test_old_entries_are_evicted(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.9, 0))
        stats = store.record("ns/a", entry("s2", 0.3, 61))

        assert stats.count == 1
        assert stats.max_severity == 0.3

    def test_subjects_are_isolated(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.5, 0))
        stats = store.record("ns/b", entry("s2", 0.5, 1))

        assert stats.count == 1
        assert len(store) == 2

    def test_requeued_signal_replaces_its_origin(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.3, 0))
        stats = store.record("ns/a", entry("s1", 0.3, 0))

        assert stats.count == 1

    def test_size_is_bounded(self):
        store = SignalWindowStore(window_seconds=600, max_entries=4)
        stats = None
        for i in range(10):
            stats = store.record("ns/a", entry(f"s{i}", 0.5, i))
        assert stats.count == 4

    def test_out_of_order_arrival_is_kept_sorted(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s2", 0.4, 30))
        store.record("ns/a", entry("s1", 0.3, 10))
        stats = store.lookup("ns/a", at(75))

        # s1 (t=10) is out of the window at t=75, s2 (t=30) is not
        assert stats.count == 1
        assert stats.severities == [0.4]

    def test_purge_idle_drops_expired_partitions(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.5, 0))
        store.record("ns/b", entry("s2", 0.5, 100))

        removed = store.purge_idle(at(120))

        assert removed == 1
        assert len(store) == 1
        assert store.lookup("ns/a", at(120)).count == 0

    def test_record_after_purge_starts_a_fresh_partition(self):
        store = SignalWindowStore(window_seconds=60)
        store.record("ns/a", entry("s1", 0.5, 0))
        store.purge_idle(at(120))

        stats = store.record("ns/a", entry("s2", 0.6, 121))
        assert stats.count == 1

    def test_concurrent_records_are_not_lost(self):
        store = SignalWindowStore(window_seconds=600, max_entries=1000)

        def writer(prefix: str):
            for i in range(100):
                store.record("ns/a", entry(f"{prefix}-{i}", 0.5, i))

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.lookup("ns/a", at(100)).count == 400
