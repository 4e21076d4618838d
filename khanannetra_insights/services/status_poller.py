"""
Polling of the remote analysis-status endpoint.

``AnalysisStatusClient`` talks to the backend, ``AnalysisTracker`` owns the
versioned snapshot of the analysis being followed, and ``poll_analysis`` ties
them together until the job completes, fails or is cancelled.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from pydantic import ValidationError

from ..config import load_settings
from ..models.schemas import AnalysisSnapshot, AnalysisStatus, AnalysisStatusUpdate
from ..utils.formatting import format_elapsed
from ..utils.numeric import as_utc, is_mapping

logger = logging.getLogger(__name__)


class AnalysisPollingError(Exception):
    """Raised when the analysis status cannot be fetched or understood."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class AnalysisStep:
    label: str
    key: str
    progress_range: Tuple[int, int]


ANALYSIS_STEPS = (
    AnalysisStep("Validating AOI", "validating", (0, 15)),
    AnalysisStep("Fetching Satellite Tiles", "preprocessing", (15, 65)),
    AnalysisStep("Loading ML Model", "processing", (65, 80)),
    AnalysisStep("Running Inference", "ml_inference_tiles", (80, 95)),
    AnalysisStep("Generating Results", "completed", (95, 100)),
)


def current_step_index(current_step: Optional[str]) -> int:
    for index, step in enumerate(ANALYSIS_STEPS):
        if step.key == current_step:
            return index
    return -1


def step_state(index: int, current_step: Optional[str]) -> str:
    """``completed``, ``active`` or ``pending`` for the step at ``index``."""
    current_index = current_step_index(current_step)
    if index < current_index:
        return "completed"
    if index == current_index:
        return "active"
    return "pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(response: requests.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return fallback
    if is_mapping(body):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return fallback


class AnalysisStatusClient:
    """HTTP client for the analysis status endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = load_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds

    def _analysis_url(self, analysis_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/python/analysis/{analysis_id}{suffix}"

    def fetch_status(self, analysis_id: str) -> AnalysisStatusUpdate:
        url = self._analysis_url(analysis_id)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise AnalysisPollingError(f"Failed to fetch analysis status: {exc}") from exc

        if response.status_code != 200:
            message = _error_message(response, f"Status endpoint returned HTTP {response.status_code}")
            raise AnalysisPollingError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise AnalysisPollingError("Status endpoint returned invalid JSON") from exc

        if not is_mapping(data):
            raise AnalysisPollingError("Status endpoint returned an unexpected payload")

        try:
            return AnalysisStatusUpdate.model_validate(data)
        except ValidationError as exc:
            raise AnalysisPollingError("Status endpoint returned an unexpected payload") from exc

    def stop_analysis(self, analysis_id: str) -> Dict[str, Any]:
        url = self._analysis_url(analysis_id, "/stop")
        try:
            response = self.session.post(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise AnalysisPollingError(f"Failed to stop analysis: {exc}") from exc

        if response.status_code not in (200, 202, 204):
            message = _error_message(response, f"Stop endpoint returned HTTP {response.status_code}")
            raise AnalysisPollingError(message, status_code=response.status_code)

        if response.status_code == 204:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return dict(body) if is_mapping(body) else {}


class AnalysisTracker:
    """Holds the snapshot of the tracked analysis.

    Snapshots are never mutated; every change swaps in a copy with a bumped
    ``version``. Updates without a tracked analysis are ignored.
    """

    def __init__(self, snapshot: Optional[AnalysisSnapshot] = None) -> None:
        self._snapshot = snapshot

    @property
    def snapshot(self) -> Optional[AnalysisSnapshot]:
        return self._snapshot

    def _replace(self, **changes: Any) -> Optional[AnalysisSnapshot]:
        if self._snapshot is None:
            return None
        changes["version"] = self._snapshot.version + 1
        self._snapshot = self._snapshot.model_copy(update=changes)
        return self._snapshot

    def start(self, analysis_id: str, aoi_id: Optional[str] = None, now: Optional[datetime] = None) -> AnalysisSnapshot:
        previous_version = self._snapshot.version if self._snapshot is not None else -1
        self._snapshot = AnalysisSnapshot(
            analysis_id=analysis_id,
            aoi_id=aoi_id,
            status=AnalysisStatus.PROCESSING,
            start_time=now or _utcnow(),
            progress=0.0,
            version=previous_version + 1,
        )
        return self._snapshot

    def restore(self, payload: Any) -> Optional[AnalysisSnapshot]:
        """Resume from a previously dumped snapshot if it was still processing."""
        if not is_mapping(payload):
            return None
        try:
            snapshot = AnalysisSnapshot.model_validate(payload)
        except ValueError as exc:
            logger.warning(f"⚠️ Discarding stored analysis snapshot: {exc}")
            return None
        if snapshot.status != AnalysisStatus.PROCESSING:
            return None
        self._snapshot = snapshot
        return snapshot

    def update_progress(self, progress: float, message: Optional[str] = None) -> Optional[AnalysisSnapshot]:
        if self._snapshot is None:
            return None
        return self._replace(
            progress=max(0.0, min(100.0, progress)),
            message=message or self._snapshot.message,
        )

    def update_status(
        self,
        status: AnalysisStatus,
        results: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AnalysisSnapshot]:
        if self._snapshot is None:
            return None
        end_time = as_utc(now) if now is not None else _utcnow()
        duration = int((end_time - self._snapshot.start_time).total_seconds())
        return self._replace(
            status=status,
            end_time=end_time,
            duration=max(0, duration),
            results=results,
            message=message or self._snapshot.message,
        )

    def clear(self) -> None:
        self._snapshot = None


UpdateCallback = Callable[[AnalysisStatusUpdate, Optional[AnalysisSnapshot]], None]


def poll_analysis(
    client: AnalysisStatusClient,
    analysis_id: str,
    tracker: Optional[AnalysisTracker] = None,
    on_update: Optional[UpdateCallback] = None,
    stop_event: Optional[threading.Event] = None,
    interval: Optional[float] = None,
    initial_delay: Optional[float] = None,
    max_polls: Optional[int] = None,
) -> Optional[AnalysisSnapshot]:
    """Poll the status endpoint until the analysis reaches a terminal state.

    Setting ``stop_event`` cancels the loop between polls. A failed fetch
    marks the snapshot failed and re-raises ``AnalysisPollingError``.
    """
    settings = load_settings()
    interval = settings.poll_interval_seconds if interval is None else interval
    initial_delay = settings.initial_poll_delay_seconds if initial_delay is None else initial_delay
    max_polls = settings.max_polls if max_polls is None else max_polls

    tracker = tracker or AnalysisTracker()
    if tracker.snapshot is None or tracker.snapshot.analysis_id != analysis_id:
        tracker.start(analysis_id)
    stop_event = stop_event or threading.Event()

    logger.info(f"🚀 Polling analysis {analysis_id} every {interval:.1f}s")

    if stop_event.wait(initial_delay):
        logger.info(f"🛑 Polling of analysis {analysis_id} cancelled")
        return tracker.update_status(AnalysisStatus.CANCELLED)

    polls = 0
    while True:
        try:
            update = client.fetch_status(analysis_id)
        except AnalysisPollingError as exc:
            logger.error(f"❌ Error polling analysis {analysis_id}: {exc}")
            tracker.update_status(AnalysisStatus.FAILED, message=str(exc))
            raise

        polls += 1
        tracker.update_progress(update.progress, update.message)
        elapsed = (_utcnow() - tracker.snapshot.start_time).total_seconds()
        logger.info(f"⏳ Analysis {analysis_id}: {update.progress:.0f}% after {format_elapsed(elapsed)}")
        if on_update is not None:
            on_update(update, tracker.snapshot)

        if update.is_completed:
            logger.info(f"✅ Analysis {analysis_id} completed after {polls} poll(s)")
            return tracker.update_status(AnalysisStatus.COMPLETED, results=update.payload())

        if update.is_failed:
            error = update.error or "Analysis failed"
            logger.error(f"❌ Analysis {analysis_id} failed: {error}")
            return tracker.update_status(AnalysisStatus.FAILED, message=error)

        if max_polls and polls >= max_polls:
            logger.warning(f"⚠️ Analysis {analysis_id} still {update.status} after {polls} poll(s), giving up")
            return tracker.snapshot

        if stop_event.wait(interval):
            logger.info(f"🛑 Polling of analysis {analysis_id} cancelled")
            return tracker.update_status(AnalysisStatus.CANCELLED)


def abort_analysis(
    client: AnalysisStatusClient,
    analysis_id: str,
    tracker: Optional[AnalysisTracker] = None,
    stop_event: Optional[threading.Event] = None,
) -> Optional[AnalysisSnapshot]:
    """Ask the backend to stop the analysis and mark it cancelled locally."""
    client.stop_analysis(analysis_id)
    if stop_event is not None:
        stop_event.set()
    if tracker is None:
        return None
    return tracker.update_status(AnalysisStatus.CANCELLED)
