"""Unit tests for the progress snapshot dataclasses and their serialization."""

from __future__ import annotations

import dataclasses

import pytest

from dialog_migrator.core.state import (
    DialogError,
    DialogProgress,
    MigrationProgress,
    MigrationStats,
    create_empty_progress,
    progress_from_dict,
    progress_to_dict,
)
from dialog_migrator.types import (
    DialogStatus,
    DialogType,
    MigrationPhase,
    RateExceededEvent,
)


def _dialog(**overrides: object) -> DialogProgress:
    values: dict = {"dialog_id": "c1", "dialog_name": "Chat", "dialog_type": DialogType.GROUP}
    values.update(overrides)
    return DialogProgress(**values)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestDefaults:
    """Tests for default values."""

    def test_empty_progress(self):
        p = create_empty_progress("alice", "bob")

        assert p.version == "1.0"
        assert p.started_at == p.updated_at
        assert p.source_account == "alice"
        assert p.target_account == "bob"
        assert p.current_phase == MigrationPhase.IDLE
        assert p.dialogs == {}
        assert p.rate_exceeded_events == ()
        assert p.stats == MigrationStats()

    def test_dialog_defaults(self):
        d = _dialog()

        assert d.status == DialogStatus.PENDING
        assert d.destination_id is None
        assert d.last_message_id is None
        assert d.migrated_count == 0
        assert d.errors == ()
        assert d.latest_error is None
        assert d.is_completed is False

    def test_snapshots_are_frozen(self):
        d = _dialog()
        with pytest.raises(dataclasses.FrozenInstanceError):
            d.status = DialogStatus.COMPLETED  # type: ignore[misc]

    def test_latest_error(self):
        first = DialogError("t1", "a", "first")
        second = DialogError("t2", "b", "second", message_id=3)
        assert _dialog(errors=(first, second)).latest_error is second

    def test_get_dialog(self):
        p = dataclasses.replace(create_empty_progress(), dialogs={"c1": _dialog()})
        assert p.get_dialog("c1").dialog_name == "Chat"
        assert p.get_dialog("c2") is None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    """Tests for progress_to_dict / progress_from_dict."""

    def test_to_dict_uses_camel_case(self):
        dialog = _dialog(
            status=DialogStatus.IN_PROGRESS,
            destination_id="dest-1",
            last_message_id=9,
            migrated_count=9,
            total_count=20,
            errors=(DialogError("t", "forward_failed", "boom", 4),),
        )
        p = MigrationProgress(
            version="1.0",
            started_at="2024-01-01T00:00:00+00:00",
            updated_at="2024-01-01T01:00:00+00:00",
            current_phase=MigrationPhase.FORWARDING_CONTENT,
            dialogs={"c1": dialog},
            rate_exceeded_events=(RateExceededEvent("t", 30, "forward_batch"),),
        )

        data = progress_to_dict(p)

        assert data["currentPhase"] == "forwarding_content"
        assert data["floodWaitEvents"] == [
            {"timestamp": "t", "seconds": 30, "operation": "forward_batch"}
        ]
        record = data["dialogs"]["c1"]
        assert record["dialogType"] == "group"
        assert record["destinationId"] == "dest-1"
        assert record["errors"][0] == {
            "timestamp": "t",
            "messageId": 4,
            "errorType": "forward_failed",
            "errorMessage": "boom",
        }
        assert set(data["stats"]) >= {"floodWaitCount", "totalFloodWaitSeconds"}

    def test_round_trip(self):
        p = MigrationProgress(
            version="1.0",
            started_at="2024-01-01T00:00:00+00:00",
            updated_at="2024-01-01T01:00:00+00:00",
            source_account="alice",
            dialogs={"c1": _dialog(last_message_id=3, migrated_count=3)},
            stats=MigrationStats(total_dialogs=1, migrated_messages=3),
        )
        assert progress_from_dict(progress_to_dict(p)) == p

    def test_from_dict_fills_optional_fields(self):
        p = progress_from_dict(
            {
                "version": "1.0",
                "startedAt": "2024-01-01T00:00:00+00:00",
                "dialogs": {"42": {"dialogName": "Old chat"}},
            }
        )

        assert p.updated_at == p.started_at
        assert p.current_phase == MigrationPhase.IDLE
        assert p.rate_exceeded_events == ()
        dialog = p.get_dialog("42")
        assert dialog.dialog_id == "42"
        assert dialog.dialog_type == DialogType.PRIVATE
        assert dialog.status == DialogStatus.PENDING

    def test_from_dict_rejects_bad_phase(self):
        with pytest.raises(ValueError):
            progress_from_dict(
                {
                    "version": "1.0",
                    "startedAt": "2024-01-01T00:00:00+00:00",
                    "currentPhase": "warp_speed",
                    "dialogs": {},
                }
            )

    def test_from_dict_rejects_non_object_dialog(self):
        with pytest.raises(ValueError, match="must be an object"):
            progress_from_dict(
                {"version": "1.0", "startedAt": "2024-01-01", "dialogs": {"c1": []}}
            )
