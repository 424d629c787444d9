"""Unit tests for the migration orchestrator, driven by the in-memory client."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from dialog_migrator.core.config import FilterSettings
from dialog_migrator.core.forwarder import ProgressEvent, ProgressEventKind
from dialog_migrator.core.orchestrator import (
    CountdownTick,
    MigrationOptions,
    MigrationOrchestrator,
)
from dialog_migrator.core.progress import load_progress
from dialog_migrator.core.shutdown import ShutdownCoordinator
from dialog_migrator.exceptions import RateExceededError, RemoteClientError
from dialog_migrator.result import Failure, MigrationErrorKind, Success
from dialog_migrator.types import (
    DateRange,
    DialogStatus,
    DialogType,
    MessageInfo,
    MigrationPhase,
)


@pytest.fixture()
def populated(client, conversation_factory, messages_factory):
    """Client with c1 "Family" (250 messages) and c2 "Work" (30 messages)."""
    client.add_conversation(
        conversation_factory("c1", name="Family", message_count=250), messages_factory(250)
    )
    client.add_conversation(
        conversation_factory("c2", name="Work", dialog_type=DialogType.GROUP, message_count=30),
        messages_factory(30),
    )
    return client


def _fail_forward_call(client, call_number, error):
    """Make the ``call_number``-th forward_batch call raise ``error``."""
    original = client.forward_batch
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == call_number:
            raise error
        return await original(*args, **kwargs)

    client.forward_batch = flaky


def _orchestrator(client, config, limiter, clock, **kwargs):
    return MigrationOrchestrator(client, config, limiter=limiter, sleep=clock.sleep, **kwargs)


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestRunMigration:
    """End-to-end runs."""

    @pytest.mark.asyncio
    async def test_migrates_every_conversation(self, populated, config, limiter, clock):
        orchestrator = _orchestrator(populated, config, limiter, clock)

        result = await orchestrator.run_migration()

        assert isinstance(result, Success)
        outcome = result.value
        progress = outcome.progress
        assert progress.current_phase == MigrationPhase.COMPLETED
        assert progress.get_dialog("c1").status == DialogStatus.COMPLETED
        assert progress.get_dialog("c2").status == DialogStatus.COMPLETED
        assert progress.stats.migrated_messages == 280
        assert progress.stats.completed_dialogs == 2
        assert progress.source_account == "alice"
        assert progress.target_account == "bob"

        titles = sorted(d.title for d in populated.destinations.values())
        assert titles == ["[Migrated] Family", "[Migrated] Work"]
        assert populated.invites == [("dest-1", "bob"), ("dest-2", "bob")]
        assert populated.forwarded["dest-1"] == list(range(1, 251))
        assert populated.forwarded["dest-2"] == list(range(1, 31))

        assert outcome.report is not None
        assert outcome.report.stats.completed_dialogs == 2
        assert outcome.interrupted is False

    @pytest.mark.asyncio
    async def test_progress_file_written(self, populated, config, limiter, clock, tmp_path):
        await _orchestrator(populated, config, limiter, clock).run_migration()

        loaded = load_progress(tmp_path / "progress.json")
        assert isinstance(loaded, Success)
        assert loaded.value.get_dialog("c1").last_message_id == 250
        assert loaded.value.current_phase == MigrationPhase.COMPLETED
        assert not (tmp_path / "progress.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_second_run_skips_completed(self, populated, config, limiter, clock):
        await _orchestrator(populated, config, limiter, clock).run_migration()

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert result.value.skipped_count == 2
        assert len(populated.calls_to("create_destination")) == 2
        assert populated.forwarded["dest-1"] == list(range(1, 251))

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, populated, config, limiter, clock, tmp_path):
        result = await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(dry_run=True)
        )

        outcome = result.value
        assert outcome.dry_run is True
        assert [c.id for c in outcome.planned] == ["c1", "c2"]
        assert outcome.estimated_messages == 280
        assert populated.calls_to("create_destination") == []
        assert populated.calls_to("forward_batch") == []
        assert not (tmp_path / "progress.json").exists()

    @pytest.mark.asyncio
    async def test_single_conversation_option(self, populated, config, limiter, clock):
        result = await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(conversation_id="c2")
        )

        progress = result.value.progress
        assert set(progress.dialogs) == {"c2"}
        assert populated.calls_to("create_destination") == [("[Migrated] Work",)]

    @pytest.mark.asyncio
    async def test_filters_exclude_types(self, populated, config_factory, limiter, clock):
        config = config_factory(filters=FilterSettings(exclude_types=[DialogType.GROUP]))

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert set(result.value.progress.dialogs) == {"c1"}

    @pytest.mark.asyncio
    async def test_date_range_limits_forwarded_items(
        self, populated, config, limiter, clock, messages_factory
    ):
        history = messages_factory(30)
        window = DateRange(start=history[9].date, end=history[19].date)

        await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(conversation_id="c2", date_range=window)
        )

        assert populated.forwarded["dest-1"] == list(range(10, 21))


# ---------------------------------------------------------------------------
# Fatal failures
# ---------------------------------------------------------------------------


class TestFatalFailures:
    """Only an unreadable progress file and enumeration failures abort."""

    @pytest.mark.asyncio
    async def test_unreadable_progress_aborts_without_overwriting(
        self, populated, config, limiter, clock, tmp_path
    ):
        path = tmp_path / "progress.json"
        path.write_text(json.dumps({"version": "2.0"}), encoding="utf-8")

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert isinstance(result, Failure)
        assert result.error.kind == MigrationErrorKind.PROGRESS_LOAD_FAILED
        assert json.loads(path.read_text(encoding="utf-8")) == {"version": "2.0"}
        assert populated.calls == []

    @pytest.mark.asyncio
    async def test_enumeration_failure_aborts(self, populated, config, limiter, clock):
        populated.fail_next("enumerate_conversations", RemoteClientError("offline"), times=3)

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert isinstance(result, Failure)
        assert result.error.kind == MigrationErrorKind.DIALOG_FETCH_FAILED
        assert "offline" in result.error.message
        assert clock.sleeps == [2.0, 4.0]
        assert populated.calls_to("create_destination") == []

    @pytest.mark.asyncio
    async def test_enumeration_retried(self, populated, config, limiter, clock):
        populated.fail_next("enumerate_conversations", RemoteClientError("blip"))

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert isinstance(result, Success)
        assert result.value.progress.stats.completed_dialogs == 2


# ---------------------------------------------------------------------------
# Per-conversation failures
# ---------------------------------------------------------------------------


class TestConversationIsolation:
    """A failing conversation never stops the others."""

    @pytest.mark.asyncio
    async def test_destination_failure_isolated(self, populated, config, limiter, clock):
        populated.fail_next("create_destination", RemoteClientError("quota"))

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        progress = result.value.progress
        failed = progress.get_dialog("c1")
        assert failed.status == DialogStatus.FAILED
        assert failed.latest_error.error_type == MigrationErrorKind.GROUP_CREATE_FAILED.value
        assert progress.get_dialog("c2").status == DialogStatus.COMPLETED
        assert result.value.report.failed_dialogs[0].dialog_id == "c1"

    @pytest.mark.asyncio
    async def test_invite_failure_reinvites_on_next_run(self, populated, config, limiter, clock):
        populated.fail_next("invite_recipient", RemoteClientError("privacy"))

        first = await _orchestrator(populated, config, limiter, clock).run_migration()

        dialog = first.value.progress.get_dialog("c1")
        assert dialog.status == DialogStatus.FAILED
        assert dialog.destination_id == "dest-1"
        assert dialog.latest_error.error_type == MigrationErrorKind.INVITE_FAILED.value

        second = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert second.value.progress.get_dialog("c1").status == DialogStatus.COMPLETED
        assert len(populated.calls_to("create_destination")) == 2
        assert ("dest-1", "bob") in populated.invites

    @pytest.mark.asyncio
    async def test_fetch_failure_isolated(self, populated, config, limiter, clock):
        populated.fail_next("fetch_message_page", RemoteClientError("server error"))

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        progress = result.value.progress
        assert progress.get_dialog("c1").status == DialogStatus.FAILED
        assert progress.get_dialog("c2").status == DialogStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unresolvable_recipient_disables_invites(
        self, populated, config_factory, limiter, clock
    ):
        config = config_factory(target_recipient="carol")

        result = await _orchestrator(populated, config, limiter, clock).run_migration()

        assert populated.invites == []
        assert result.value.progress.stats.completed_dialogs == 2


# ---------------------------------------------------------------------------
# Rate limits and resume
# ---------------------------------------------------------------------------


class TestRateExceeded:
    """Rate-exceeded halts, resumes and bookkeeping."""

    @pytest.mark.asyncio
    async def test_short_wait_resumes_in_same_run(self, populated, config, limiter, clock):
        _fail_forward_call(populated, 2, RateExceededError(5))

        result = await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(conversation_id="c1")
        )

        progress = result.value.progress
        assert progress.get_dialog("c1").status == DialogStatus.COMPLETED
        assert populated.forwarded["dest-1"] == list(range(1, 251))
        assert 5 in clock.sleeps
        assert progress.stats.rate_exceeded_count == 1
        assert progress.rate_exceeded_events[0].operation == "forward_batch"

    @pytest.mark.asyncio
    async def test_long_wait_leaves_dialog_partially_migrated(
        self, populated, config_factory, limiter, clock
    ):
        config = config_factory()
        config.rate_limit.rate_exceeded_threshold = 10
        _fail_forward_call(populated, 2, RateExceededError(60))

        first = await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(conversation_id="c1")
        )

        dialog = first.value.progress.get_dialog("c1")
        assert dialog.status == DialogStatus.PARTIALLY_MIGRATED
        assert dialog.last_message_id == 100
        assert dialog.migrated_count == 100
        assert first.value.progress.stats.total_rate_exceeded_seconds == 60
        assert first.value.report.partial_dialogs[0].dialog_id == "c1"

        second = await _orchestrator(populated, config, limiter, clock).run_migration(
            MigrationOptions(conversation_id="c1")
        )

        dialog = second.value.progress.get_dialog("c1")
        assert dialog.status == DialogStatus.COMPLETED
        assert dialog.migrated_count == 250
        assert populated.forwarded["dest-1"] == list(range(1, 251))
        assert len(populated.calls_to("create_destination")) == 1

    @pytest.mark.asyncio
    async def test_countdown_ticks_reach_event_callback(self, populated, config, limiter, clock):
        received = []
        _fail_forward_call(populated, 1, RateExceededError(3))

        await _orchestrator(
            populated, config, limiter, clock, on_event=received.append
        ).run_migration(MigrationOptions(conversation_id="c1"))

        ticks = [e.remaining for e in received if isinstance(e, CountdownTick)]
        assert ticks == [3, 2, 1]


# ---------------------------------------------------------------------------
# Shutdown and realtime sync
# ---------------------------------------------------------------------------


class TestShutdown:
    """Cooperative stop requests."""

    @pytest.mark.asyncio
    async def test_stops_after_batch_in_flight(self, populated, config, limiter, clock):
        shutdown = ShutdownCoordinator()

        def on_event(event):
            if isinstance(event, ProgressEvent) and event.kind == ProgressEventKind.BATCH_COMPLETED:
                shutdown.request_shutdown("test")

        result = await _orchestrator(
            populated, config, limiter, clock, shutdown=shutdown, on_event=on_event
        ).run_migration()

        outcome = result.value
        assert outcome.interrupted is True
        c1 = outcome.progress.get_dialog("c1")
        assert c1.status == DialogStatus.IN_PROGRESS
        assert c1.last_message_id == 100
        assert outcome.progress.get_dialog("c2").status == DialogStatus.PENDING
        assert outcome.progress.current_phase != MigrationPhase.COMPLETED


    @pytest.mark.asyncio
    async def test_stop_request_cuts_rate_exceeded_wait_short(
        self, populated, config, clock, tmp_path
    ):
        shutdown = ShutdownCoordinator(grace_period=30.0)
        forced = MagicMock()
        shutdown.on_force_exit(forced)
        populated.fail_next("create_destination", RateExceededError(3600))
        # Real sleeps: the limiter would otherwise sit out the full hour
        orchestrator = MigrationOrchestrator(
            populated, config, shutdown=shutdown, sleep=clock.sleep
        )

        task = asyncio.ensure_future(orchestrator.run_migration())
        await asyncio.sleep(0.05)
        shutdown.request_shutdown("test")
        done, _ = await asyncio.wait({task}, timeout=2.0)
        shutdown.disarm()

        assert task in done
        outcome = task.result().value
        assert outcome.interrupted is True
        assert populated.forwarded == {}
        assert load_progress(tmp_path / "progress.json").ok
        forced.assert_not_called()


class TestRealtimeSync:
    """Live messages captured during forwarding."""

    @pytest.mark.asyncio
    async def test_live_messages_forwarded_once(self, populated, config, limiter, clock):
        newest = populated.messages["c1"][-1]

        def on_event(event):
            if isinstance(event, ProgressEvent) and event.kind == ProgressEventKind.DIALOG_STARTED:
                # One brand new message and one the history walk already covers
                populated.emit_new_message(
                    "c1", MessageInfo(message_id=251, date=newest.date + timedelta(hours=1))
                )
                populated.emit_new_message("c1", MessageInfo(message_id=50, date=newest.date))

        result = await _orchestrator(
            populated, config, limiter, clock, on_event=on_event
        ).run_migration(MigrationOptions(conversation_id="c1"))

        dialog = result.value.progress.get_dialog("c1")
        assert dialog.status == DialogStatus.COMPLETED
        assert dialog.migrated_count == 251
        assert dialog.last_message_id == 251
        assert populated.forwarded["dest-1"] == list(range(1, 252))
        assert populated.active_handlers == 0


    @pytest.mark.asyncio
    async def test_rate_signals_during_drain_wait_instead_of_failing(
        self, populated, config, limiter, clock
    ):
        newest = populated.messages["c1"][-1]
        original = populated.forward_batch
        calls = {"n": 0}

        async def rate_limited_after_history(*args, **kwargs):
            calls["n"] += 1
            # Calls 1-3 carry the history, the next three hit the live message
            if 4 <= calls["n"] <= 6:
                raise RateExceededError(5)
            return await original(*args, **kwargs)

        populated.forward_batch = rate_limited_after_history

        def on_event(event):
            if isinstance(event, ProgressEvent) and event.kind == ProgressEventKind.DIALOG_STARTED:
                populated.emit_new_message(
                    "c1", MessageInfo(message_id=251, date=newest.date + timedelta(hours=1))
                )

        result = await _orchestrator(
            populated, config, limiter, clock, on_event=on_event
        ).run_migration(MigrationOptions(conversation_id="c1"))

        dialog = result.value.progress.get_dialog("c1")
        assert sum(clock.sleeps) >= 15
        assert populated.forwarded["dest-1"][-1] == 251
        assert dialog.last_message_id == 251
        assert result.value.progress.stats.failed_messages == 0
        assert "realtime_sync_failed" not in [e.error_type for e in dialog.errors]

    @pytest.mark.asyncio
    async def test_disabled_realtime_sync(self, populated, config_factory, limiter, clock):
        config = config_factory()
        config.realtime_sync.enabled = False

        orchestrator = _orchestrator(populated, config, limiter, clock)
        await orchestrator.run_migration()

        assert orchestrator.sync_queue is None
        assert populated.calls_to("add_new_message_handler") == []

    @pytest.mark.asyncio
    async def test_dialog_log_files(self, populated, config_factory, limiter, clock, tmp_path):
        config = config_factory(dialog_log_dir=str(tmp_path / "logs"))

        await _orchestrator(populated, config, limiter, clock).run_migration()

        assert (tmp_path / "logs" / "dialog_c1.log").exists()
        assert (tmp_path / "logs" / "dialog_c2.log").exists()
