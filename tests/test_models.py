"""Tests for the shared value types."""

from __future__ import annotations

import pytest

from mqexplorer.models import (
    UNKNOWN_DEPTH,
    BrowseFilter,
    BrowseOptions,
    ConnectionProfile,
    DeleteReport,
    Message,
    ProviderKind,
    QueueInfo,
)


def test_browse_options_rejects_zero_limit() -> None:
    with pytest.raises(ValueError):
        BrowseOptions(limit=0)


def test_browse_options_rejects_negative_start() -> None:
    with pytest.raises(ValueError):
        BrowseOptions(limit=5, start_position=-1)


def test_browse_window_spans_skipped_and_returned_messages() -> None:
    assert BrowseOptions(limit=10, start_position=5).window == 15


def test_browse_filter_matches_on_every_given_field() -> None:
    message = Message(id="m1", payload="x", correlation_id="c1")

    assert BrowseFilter(message_id="m1").matches(message)
    assert BrowseFilter(correlation_id="c1").matches(message)
    assert BrowseFilter(message_id="m1", correlation_id="c1").matches(message)
    assert not BrowseFilter(message_id="m1", correlation_id="other").matches(message)
    assert BrowseFilter().matches(message)


def test_message_properties_are_read_only() -> None:
    source = {"priority": 4}
    message = Message(id="m1", payload=b"\x00\x01", properties=source)
    source["priority"] = 9

    assert message.properties["priority"] == 4
    with pytest.raises(TypeError):
        message.properties["priority"] = 1  # type: ignore[index]


def test_message_size_counts_encoded_bytes() -> None:
    assert Message(id="m", payload="héllo").size == 6
    assert Message(id="m", payload=b"abc").payload_bytes == b"abc"


def test_profile_coerces_kind_and_freezes_params() -> None:
    profile = ConnectionProfile(id="p1", name="Local", kind="kafka", params={"brokers": ["b:9092"]})

    assert profile.kind is ProviderKind.KAFKA
    with pytest.raises(TypeError):
        profile.params["brokers"] = []  # type: ignore[index]


def test_queue_depth_defaults_to_unknown() -> None:
    assert QueueInfo(name="Q").depth is UNKNOWN_DEPTH


def test_delete_report_counts_retained_as_succeeded() -> None:
    report = DeleteReport(deleted=("a",), retained=("b",), failed={"c": "gone"})

    assert report.succeeded == ("a", "b")
    assert report.ok is False
    assert DeleteReport(deleted=("a",)).ok is True
