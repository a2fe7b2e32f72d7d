"""
Unit tests for snapshots, the file store and startup reconciliation
"""
import asyncio
import json

import pytest

from lib.timer import (
    PersistedSnapshot,
    ReconcileOutcome,
    Settings,
    SnapshotError,
    SnapshotStore,
    StatePersistence,
    reconcile,
)


NOW_MS = 1_700_000_000_000


def _snapshot(remaining=100, active=True, seconds_ago=30, **settings):
    return PersistedSnapshot(
        time_remaining=remaining,
        is_active=active,
        settings=Settings(**settings),
        saved_at=NOW_MS - seconds_ago * 1000,
    )


# =============================================================================
# Snapshot Model
# =============================================================================

class TestSnapshot:
    """Tests for PersistedSnapshot"""

    def test_wire_form(self):
        snapshot = _snapshot()
        data = snapshot.to_dict()

        assert data["timeRemaining"] == 100
        assert data["isActive"] is True
        assert data["lastSaved"] == NOW_MS - 30_000
        assert data["settings"] == Settings().to_dict()
        assert PersistedSnapshot.from_dict(data) == snapshot

    def test_missing_fields_take_defaults(self):
        snapshot = PersistedSnapshot.from_dict({})
        assert snapshot.time_remaining == 3600
        assert snapshot.is_active is False
        assert snapshot.settings == Settings()

    @pytest.mark.parametrize("data", [
        [],
        "snapshot",
        {"timeRemaining": "100"},
        {"timeRemaining": True},
        {"isActive": "yes"},
        {"lastSaved": "yesterday"},
        {"lastSaved": float("nan")},
        {"lastSaved": float("inf")},
    ])
    def test_wrong_types_rejected(self, data):
        with pytest.raises(SnapshotError):
            PersistedSnapshot.from_dict(data)

    def test_capture(self, make_engine):
        engine = make_engine()
        engine.reset(500)
        snapshot = PersistedSnapshot.capture(engine, saved_at=NOW_MS)

        assert snapshot.time_remaining == 500
        assert snapshot.is_active is False
        assert snapshot.saved_at == NOW_MS


# =============================================================================
# File Store
# =============================================================================

class TestSnapshotStore:
    """Tests for SnapshotStore"""

    def test_missing_file(self, tmp_path):
        assert SnapshotStore(tmp_path / "state.json").load() is None

    def test_save_and_load(self, tmp_path):
        store = SnapshotStore(tmp_path / "state.json")
        snapshot = _snapshot(timer_color="#123456")
        store.save(snapshot)

        assert store.load() == snapshot
        assert not (tmp_path / "state.json.tmp").exists()

    def test_creates_parent_directory(self, tmp_path):
        store = SnapshotStore(tmp_path / "data" / "state.json")
        store.save(_snapshot())
        assert (tmp_path / "data" / "state.json").exists()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(SnapshotError):
            SnapshotStore(path).load()

    def test_file_format(self, tmp_path):
        path = tmp_path / "state.json"
        SnapshotStore(path).save(_snapshot())
        data = json.loads(path.read_text())
        assert set(data) == {"timeRemaining", "isActive", "settings", "lastSaved"}


# =============================================================================
# Reconciliation
# =============================================================================

class TestReconcile:
    """Tests for reconcile()"""

    def test_no_snapshot(self, make_engine):
        engine = make_engine()
        assert reconcile(engine, None, now_ms=NOW_MS) is ReconcileOutcome.FRESH
        assert engine.time_remaining == 3600
        assert engine.is_active is False

    @pytest.mark.asyncio
    async def test_recent_active_snapshot_resumes(self, make_engine):
        """Active with 100s left, saved 30s ago: resumes running at 70s"""
        engine = make_engine()
        outcome = reconcile(engine, _snapshot(100, True, 30), now_ms=NOW_MS)

        assert outcome is ReconcileOutcome.RESUMED
        assert engine.is_active is True
        assert engine.get_state()["timeRemaining"] == 70
        await engine.close()

    def test_old_active_snapshot_restored_inactive(self, make_engine):
        """Active with 100s left, saved 6 minutes ago: 100s, not running"""
        engine = make_engine()
        outcome = reconcile(engine, _snapshot(100, True, 360), now_ms=NOW_MS)

        assert outcome is ReconcileOutcome.RESTORED
        assert engine.is_active is False
        assert engine.time_remaining == 100

    def test_expired_while_offline(self, make_engine):
        engine = make_engine()
        outcome = reconcile(engine, _snapshot(20, True, 45), now_ms=NOW_MS)

        assert outcome is ReconcileOutcome.EXPIRED
        assert engine.is_active is False
        assert engine.time_remaining == 0

    def test_inactive_snapshot_never_starts(self, make_engine):
        engine = make_engine()
        outcome = reconcile(engine, _snapshot(100, False, 10), now_ms=NOW_MS)

        assert outcome is ReconcileOutcome.RESTORED
        assert engine.is_active is False
        assert engine.time_remaining == 100

    def test_settings_restored(self, make_engine):
        engine = make_engine()
        reconcile(engine, _snapshot(100, False, 10, tier3_sub_time=42), now_ms=NOW_MS)
        assert engine.get_settings().tier3_sub_time == 42

    @pytest.mark.asyncio
    async def test_future_timestamp_counts_as_no_downtime(self, make_engine):
        engine = make_engine()
        outcome = reconcile(engine, _snapshot(100, True, -60), now_ms=NOW_MS)

        assert outcome is ReconcileOutcome.RESUMED
        assert engine.get_state()["timeRemaining"] == 100
        await engine.close()

    def test_reconcile_is_quiet(self, make_engine, recorder):
        engine = make_engine()
        reconcile(engine, _snapshot(100, False, 10), now_ms=NOW_MS)
        assert recorder.messages == []


# =============================================================================
# Persistence Service
# =============================================================================

class TestStatePersistence:
    """Tests for StatePersistence"""

    def test_restore_corrupt_file_starts_fresh(self, make_engine, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2")
        persistence = StatePersistence(make_engine(), SnapshotStore(path))

        assert persistence.restore(now_ms=NOW_MS) is ReconcileOutcome.FRESH

    @pytest.mark.parametrize("saved_at", ["NaN", "Infinity", "-Infinity"])
    def test_restore_non_finite_timestamp_starts_fresh(self, make_engine, tmp_path, saved_at):
        """JSON allows NaN and Infinity literals, which are not valid timestamps"""
        path = tmp_path / "state.json"
        path.write_text(
            f'{{"timeRemaining": 100, "isActive": true, "lastSaved": {saved_at}}}'
        )
        engine = make_engine()
        persistence = StatePersistence(engine, SnapshotStore(path))

        assert persistence.restore(now_ms=NOW_MS) is ReconcileOutcome.FRESH
        assert engine.is_active is False
        assert engine.time_remaining == 3600

    @pytest.mark.asyncio
    async def test_save_now(self, make_engine, tmp_path):
        engine = make_engine()
        engine.reset(1234)
        store = SnapshotStore(tmp_path / "state.json")
        persistence = StatePersistence(engine, store)

        assert await persistence.save_now() is True
        assert store.load().time_remaining == 1234
        assert persistence.save_count == 1

    @pytest.mark.asyncio
    async def test_burst_of_save_requests(self, make_engine, tmp_path):
        """Many queued saves write one at a time and the last state wins"""
        engine = make_engine()
        store = SnapshotStore(tmp_path / "state.json")
        persistence = StatePersistence(engine, store)

        for _ in range(200):
            engine.add_time(1)
            persistence.request_save()
        await asyncio.gather(*persistence._pending)

        assert persistence.failure_count == 0
        assert persistence.save_count == 200
        assert store.load().time_remaining == 3600 + 200
        assert not (tmp_path / "state.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_save_failure_reported(self, make_engine, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        store = SnapshotStore(blocker / "state.json")
        persistence = StatePersistence(make_engine(), store)

        assert await persistence.save_now() is False
        assert persistence.failure_count == 1

    @pytest.mark.asyncio
    async def test_stop_writes_final_snapshot(self, make_engine, tmp_path):
        """Stopping autosave saves the running state as active"""
        engine = make_engine()
        store = SnapshotStore(tmp_path / "state.json")
        persistence = StatePersistence(engine, store, interval=3600)

        await persistence.start()
        engine.start()
        await persistence.stop()

        snapshot = store.load()
        assert snapshot.is_active is True
        assert snapshot.time_remaining == 3600
        assert persistence.running is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_settings_update_triggers_save(self, make_engine, tmp_path):
        engine = make_engine()
        store = SnapshotStore(tmp_path / "state.json")
        persistence = StatePersistence(engine, store)
        engine.save_hook = persistence.request_save

        engine.update_settings({"giftSubTime": 77})
        await persistence.stop()

        assert store.load().settings.gift_sub_time == 77
