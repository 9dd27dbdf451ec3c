"""Unit tests for status aggregation."""

import pytest
from pydantic import ValidationError

from debugbridge.domain.models import StatusSnapshot
from debugbridge.domain.status import aggregate


class TestAggregateTable:
    def test_not_configured(self):
        snap = aggregate(False, True, [9222], True, "9.1.0")

        assert snap.line1 == "Not configured"
        assert snap.line2 == ""
        assert snap.line3 == ""
        assert snap.process_running is False

    def test_process_not_running(self):
        snap = aggregate(True, False, [9222], True, "9.1.0")

        assert snap.line1 == "Process not running"
        assert snap.line2 == ""
        assert snap.line3 == ""
        assert snap.active_forward_count == 1

    def test_connected_with_forwards(self):
        snap = aggregate(True, True, [9222, 9223], True, "9.1.0")

        assert "9.1.0" in snap.line1
        assert snap.line1 == "Connected: 9.1.0"
        assert snap.line2 == "API: Responding"
        assert "9222" in snap.line3 and "9223" in snap.line3
        assert snap.line3 == "Forwards: Active (9222,9223)"
        assert snap.active_forward_count == 2
        assert snap.api_responding is True

    def test_connected_without_version_falls_back(self):
        snap = aggregate(True, True, [9222], True, "")

        assert snap.line1 == "Connected: Connected"

    def test_connected_without_forwards(self):
        snap = aggregate(True, True, [], True, "9.1.0")

        assert snap.line1 == "Connected: 9.1.0"
        assert snap.line2 == "API: Responding"
        assert snap.line3 == "Forwards: None active"

    def test_not_responding_with_forwards(self):
        snap = aggregate(True, True, [9222, 9222], False, "")

        assert snap.line1 == "Not responding"
        assert snap.line2 == "API: Not responding"
        assert snap.line3 == "Forwards: Active (9222,9222)"

    def test_not_responding_without_forwards(self):
        snap = aggregate(True, True, [], False, "")

        assert snap.line1 == "Not responding"
        assert snap.line2 == "API: Not responding"
        assert snap.line3 == "Forwards: None"
        assert snap.active_forward_count == 0


def test_aggregate_is_pure():
    args = (True, True, [9222, 9222], True, "9.1.0")
    assert aggregate(*args) == aggregate(*args)


def test_snapshot_views():
    snap = aggregate(True, False, [], False, "")

    assert snap.lines == ["Process not running"]
    assert snap.tooltip == "Process not running"
    assert snap.to_dict()["lines"] == ["Process not running", "", ""]


def test_snapshot_is_frozen():
    snap = StatusSnapshot(line1="x")
    with pytest.raises(ValidationError):
        snap.line1 = "y"  # type: ignore[misc]
    assert snap.line1 == "x"
