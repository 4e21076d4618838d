"""Tests for the analysis status client, tracker and polling loop."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
import requests

from khanannetra_insights.models.schemas import AnalysisStatus
from khanannetra_insights.services.status_poller import (
    ANALYSIS_STEPS,
    AnalysisPollingError,
    AnalysisStatusClient,
    AnalysisTracker,
    abort_analysis,
    current_step_index,
    poll_analysis,
    step_state,
)

BASE_URL = "http://backend/api/"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _client(session) -> AnalysisStatusClient:
    return AnalysisStatusClient(base_url=BASE_URL, session=session, timeout=3)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def test_fetch_status_parses_payload(make_session, response) -> None:
    session = make_session(response(200, {
        "status": "PROCESSING",
        "progress": "42.5",
        "message": "Fetching tiles",
        "current_step": "preprocessing",
        "tiles_fetched": "3",
        "total_tiles": 10,
        "aoi_id": "aoi-7",
    }))

    update = _client(session).fetch_status("abc")

    assert session.calls == [("GET", "http://backend/api/python/analysis/abc", 3)]
    assert update.status == "processing"
    assert update.progress == 42.5
    assert update.tiles_fetched == 3
    assert update.total_tiles == 10
    assert not update.is_completed
    assert not update.is_failed
    assert update.payload()["aoi_id"] == "aoi-7"


def test_fetch_status_defaults_missing_fields(make_session, response) -> None:
    update = _client(make_session(response(200, {}))).fetch_status("abc")

    assert update.status == "processing"
    assert update.progress == 0
    assert update.error is None


def test_fetch_status_http_error_uses_body_message(make_session, response) -> None:
    session = make_session(response(404, {"message": "Analysis not found"}))

    with pytest.raises(AnalysisPollingError) as excinfo:
        _client(session).fetch_status("missing")

    assert str(excinfo.value) == "Analysis not found"
    assert excinfo.value.status_code == 404


def test_fetch_status_http_error_without_body(make_session, response) -> None:
    session = make_session(response(503, invalid_json=True))

    with pytest.raises(AnalysisPollingError) as excinfo:
        _client(session).fetch_status("abc")

    assert "503" in str(excinfo.value)
    assert excinfo.value.status_code == 503


def test_fetch_status_network_error(make_session) -> None:
    session = make_session(requests.ConnectionError("connection refused"))

    with pytest.raises(AnalysisPollingError) as excinfo:
        _client(session).fetch_status("abc")

    assert "connection refused" in str(excinfo.value)
    assert excinfo.value.status_code is None


def test_fetch_status_invalid_json(make_session, response) -> None:
    with pytest.raises(AnalysisPollingError):
        _client(make_session(response(200, invalid_json=True))).fetch_status("abc")


def test_fetch_status_non_object_body(make_session, response) -> None:
    with pytest.raises(AnalysisPollingError):
        _client(make_session(response(200, ["processing"]))).fetch_status("abc")


def test_stop_analysis(make_session, response) -> None:
    session = make_session(response(202, {"message": "Stopping"}), response(204))

    client = _client(session)

    assert client.stop_analysis("abc") == {"message": "Stopping"}
    assert client.stop_analysis("abc") == {}
    assert session.calls[0] == ("POST", "http://backend/api/python/analysis/abc/stop", 3)


def test_stop_analysis_rejected(make_session, response) -> None:
    session = make_session(response(409, {"detail": "Analysis already finished"}))

    with pytest.raises(AnalysisPollingError, match="already finished"):
        _client(session).stop_analysis("abc")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def test_step_states_follow_current_step() -> None:
    states = [step_state(index, "processing") for index in range(len(ANALYSIS_STEPS))]

    assert current_step_index("processing") == 2
    assert states == ["completed", "completed", "active", "pending", "pending"]


def test_unknown_step_leaves_everything_pending() -> None:
    assert current_step_index("unknown") == -1
    assert current_step_index(None) == -1
    assert step_state(0, None) == "pending"


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


def test_tracker_ignores_updates_without_analysis() -> None:
    tracker = AnalysisTracker()

    assert tracker.update_progress(50) is None
    assert tracker.update_status(AnalysisStatus.COMPLETED) is None
    assert tracker.snapshot is None


def test_tracker_versions_every_change() -> None:
    tracker = AnalysisTracker()
    first = tracker.start("abc", aoi_id="aoi-1", now=START)
    second = tracker.update_progress(150, "Almost there")
    third = tracker.update_progress(-5)

    assert (first.version, second.version, third.version) == (0, 1, 2)
    assert first.progress == 0
    assert second.progress == 100
    assert third.progress == 0
    assert third.message == "Almost there"
    assert first.message is None


def test_tracker_duration_from_start_to_end() -> None:
    tracker = AnalysisTracker()
    tracker.start("abc", now=START)

    snapshot = tracker.update_status(
        AnalysisStatus.COMPLETED,
        results={"status": "completed"},
        now=START + timedelta(seconds=90),
    )

    assert snapshot.status == AnalysisStatus.COMPLETED
    assert snapshot.duration == 90
    assert snapshot.end_time == START + timedelta(seconds=90)
    assert snapshot.results == {"status": "completed"}


def test_tracker_treats_naive_times_as_utc() -> None:
    tracker = AnalysisTracker()
    tracker.start("abc", now=datetime(2024, 1, 1))

    snapshot = tracker.update_status(AnalysisStatus.FAILED, now=datetime(2024, 1, 1, 0, 0, 10))

    assert snapshot.start_time.tzinfo is not None
    assert snapshot.duration == 10


def test_restarting_keeps_version_increasing() -> None:
    tracker = AnalysisTracker()
    tracker.start("abc", now=START)
    tracker.update_progress(20)

    assert tracker.start("def", now=START).version == 2


def test_restore_processing_snapshot() -> None:
    tracker = AnalysisTracker()
    stored = tracker.start("abc", aoi_id="aoi-1", now=START).model_dump(by_alias=True, mode="json")

    restored = AnalysisTracker().restore(stored)

    assert restored is not None
    assert restored.analysis_id == "abc"
    assert restored.start_time == START


def test_restore_ignores_finished_or_invalid_snapshots() -> None:
    tracker = AnalysisTracker()
    tracker.start("abc", now=START)
    finished = tracker.update_status(AnalysisStatus.COMPLETED, now=START).model_dump(mode="json")

    fresh = AnalysisTracker()
    assert fresh.restore(finished) is None
    assert fresh.restore({"status": "processing"}) is None
    assert fresh.restore("abc") is None
    assert fresh.snapshot is None


# ---------------------------------------------------------------------------
# Polling loop
# ---------------------------------------------------------------------------


def test_poll_until_completed(make_session, response) -> None:
    session = make_session(
        response(200, {"status": "processing", "progress": 20, "current_step": "preprocessing"}),
        response(200, {"status": "processing", "progress": 60, "current_step": "processing"}),
        response(200, {"status": "completed", "progress": 100, "results": {"summary": {"total_tiles": 3}}}),
    )
    updates = []
    tracker = AnalysisTracker()

    snapshot = poll_analysis(
        _client(session),
        "abc",
        tracker=tracker,
        on_update=lambda update, current: updates.append((update.progress, current.progress)),
        interval=0,
        initial_delay=0,
    )

    assert snapshot.status == AnalysisStatus.COMPLETED
    assert snapshot.results["results"]["summary"]["total_tiles"] == 3
    assert snapshot.version == 4
    assert updates == [(20, 20), (60, 60), (100, 100)]
    assert tracker.snapshot is snapshot
    assert len(session.calls) == 3


def test_full_progress_counts_as_completed(make_session, response) -> None:
    session = make_session(response(200, {"status": "processing", "progress": 100}))

    snapshot = poll_analysis(_client(session), "abc", interval=0, initial_delay=0)

    assert snapshot.status == AnalysisStatus.COMPLETED


def test_poll_reports_backend_failure(make_session, response) -> None:
    session = make_session(response(200, {"status": "failed", "progress": 40, "error": "GEE quota exceeded"}))

    snapshot = poll_analysis(_client(session), "abc", interval=0, initial_delay=0)

    assert snapshot.status == AnalysisStatus.FAILED
    assert snapshot.message == "GEE quota exceeded"


def test_poll_fetch_error_marks_failed_and_raises(make_session, response) -> None:
    session = make_session(response(500, {"detail": "Internal error"}))
    tracker = AnalysisTracker()

    with pytest.raises(AnalysisPollingError):
        poll_analysis(_client(session), "abc", tracker=tracker, interval=0, initial_delay=0)

    assert tracker.snapshot.status == AnalysisStatus.FAILED
    assert tracker.snapshot.message == "Internal error"


def test_poll_gives_up_after_max_polls(make_session, response) -> None:
    session = make_session(
        response(200, {"status": "processing", "progress": 10}),
        response(200, {"status": "processing", "progress": 15}),
    )

    snapshot = poll_analysis(_client(session), "abc", interval=0, initial_delay=0, max_polls=2)

    assert snapshot.status == AnalysisStatus.PROCESSING
    assert snapshot.progress == 15
    assert len(session.calls) == 2


def test_poll_cancelled_before_first_request(make_session) -> None:
    session = make_session()
    stop_event = threading.Event()
    stop_event.set()

    snapshot = poll_analysis(_client(session), "abc", stop_event=stop_event, interval=0, initial_delay=0)

    assert snapshot.status == AnalysisStatus.CANCELLED
    assert session.calls == []


def test_poll_cancelled_between_requests(make_session, response) -> None:
    session = make_session(response(200, {"status": "processing", "progress": 30}))
    stop_event = threading.Event()

    snapshot = poll_analysis(
        _client(session),
        "abc",
        on_update=lambda update, current: stop_event.set(),
        stop_event=stop_event,
        interval=0,
        initial_delay=0,
    )

    assert snapshot.status == AnalysisStatus.CANCELLED
    assert snapshot.progress == 30
    assert len(session.calls) == 1


def test_poll_resumes_restored_snapshot(make_session, response) -> None:
    tracker = AnalysisTracker()
    tracker.start("abc", now=START)
    session = make_session(response(200, {"status": "completed", "progress": 100}))

    snapshot = poll_analysis(_client(session), "abc", tracker=tracker, interval=0, initial_delay=0)

    assert snapshot.start_time == START
    assert snapshot.version == 2


def test_abort_analysis(make_session, response) -> None:
    session = make_session(response(200, {"success": True}))
    tracker = AnalysisTracker()
    tracker.start("abc", now=START)
    stop_event = threading.Event()

    snapshot = abort_analysis(_client(session), "abc", tracker=tracker, stop_event=stop_event)

    assert snapshot.status == AnalysisStatus.CANCELLED
    assert stop_event.is_set()
    assert session.calls == [("POST", "http://backend/api/python/analysis/abc/stop", 3)]


def test_fetch_status_coerces_numeric_step(make_session, response) -> None:
    session = make_session(response(200, {"status": "processing", "progress": 10, "current_step": 3}))

    update = _client(session).fetch_status("abc")

    assert update.current_step == "3"
    assert current_step_index(update.current_step) == -1


def test_fetch_status_malformed_fields(make_session, response) -> None:
    session = make_session(response(200, {"status": "processing", "tiles": {"a": 1}}))

    with pytest.raises(AnalysisPollingError, match="unexpected payload"):
        _client(session).fetch_status("abc")


def test_poll_malformed_status_marks_failed(make_session, response) -> None:
    session = make_session(response(200, {"tiles": {"a": 1}}))
    tracker = AnalysisTracker()

    with pytest.raises(AnalysisPollingError):
        poll_analysis(_client(session), "abc", tracker=tracker, interval=0, initial_delay=0)

    assert tracker.snapshot.status == AnalysisStatus.FAILED
    assert tracker.snapshot.message == "Status endpoint returned an unexpected payload"
