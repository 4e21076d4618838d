"""
Normalization of analysis results returned by the detection backend.

The backend has shipped several response formats over time: the payload may
sit under a nested ``results`` object or at the top level, and fields appear
in snake_case, camelCase or both. ``normalize_analysis_results`` resolves every
canonical field through an explicit fallback chain so the dashboards only ever
see one shape.
"""

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.schemas import CanonicalAnalysisResult, MiningArea
from ..utils.numeric import (
    SQUARE_METERS_PER_HECTARE,
    SQUARE_METERS_PER_KM2,
    coerce_duration_seconds,
    coerce_timestamp,
    get_value_by_path,
    is_mapping,
    parse_numeric,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

CREATED_AT_PATHS = ("createdAt", "created_at")

COMPLETED_AT_PATHS = ("completedAt", "completed_at", "finishedAt", "finished_at")

START_TIME_PATHS = (
    "startTime",
    "start_time",
    "startedAt",
    "started_at",
    "analysisStart",
    "analysis_start",
    "analysisStartedAt",
    "analysis_started_at",
    "timeline.start",
    "timeline.startedAt",
    "timeline.started_at",
    "timing.startTime",
    "timing.start_time",
    "timing.startedAt",
    "timing.started_at",
    "runtime.start",
    "runtime.startedAt",
)

END_TIME_PATHS = (
    "endTime",
    "end_time",
    "completedAt",
    "completed_at",
    "finishedAt",
    "finished_at",
    "analysisCompletedAt",
    "analysis_completed_at",
    "timeline.end",
    "timeline.completedAt",
    "timeline.completed_at",
    "timing.endTime",
    "timing.end_time",
    "timing.completedAt",
    "timing.completed_at",
    "runtime.end",
)

# (field, divisor) pairs; milliseconds are divided down to seconds
PAYLOAD_DURATION_FIELDS: Tuple[Tuple[str, float], ...] = (
    ("durationSeconds", 1),
    ("duration", 1),
    ("runtimeSeconds", 1),
    ("processingTimeSeconds", 1),
    ("runtimeMs", 1000),
    ("runtime_ms", 1000),
    ("processingTimeMs", 1000),
    ("processing_time_ms", 1000),
    ("durationMs", 1000),
    ("duration_ms", 1000),
)

SUMMARY_DURATION_FIELDS: Tuple[Tuple[str, float], ...] = (
    ("durationSeconds", 1),
    ("duration_seconds", 1),
    ("runtimeSeconds", 1),
    ("runtime_seconds", 1),
    ("runtimeMs", 1000),
    ("runtime_ms", 1000),
)

STATISTICS_DURATION_FIELDS: Tuple[Tuple[str, float], ...] = SUMMARY_DURATION_FIELDS + (
    ("processingTimeSeconds", 1),
    ("processing_time_seconds", 1),
    ("processingTimeMs", 1000),
    ("processing_time_ms", 1000),
)


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if is_mapping(value) else {}


def _first_list(*candidates: Any) -> List[Any]:
    for candidate in candidates:
        if isinstance(candidate, list):
            return list(candidate)
    return []


def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _count(value: Any) -> Optional[int]:
    numeric = parse_numeric(value)
    if numeric is None or numeric < 0:
        return None
    return int(round(numeric))


def _first_count(*candidates: Any, default: int) -> int:
    for candidate in candidates:
        count = _count(candidate)
        if count is not None:
            return count
    return default


def count_tiles_with_mining(tiles: Iterable[Any]) -> int:
    return sum(
        1 for tile in tiles
        if is_mapping(tile) and (tile.get("mining_detected") or tile.get("miningDetected"))
    )


def _resolve_mining_area(primary: Dict[str, Any], top_level: Dict[str, Any], summary: Dict[str, Any]) -> MiningArea:
    if is_mapping(primary.get("totalMiningArea")):
        source_area = dict(primary["totalMiningArea"])
    else:
        source_area = _as_dict(top_level.get("totalMiningArea"))

    m2 = _first_present(
        parse_numeric(source_area.get("m2")),
        parse_numeric(source_area.get("squareMeters")),
        parse_numeric(summary.get("mining_area_m2")),
    )
    if m2 is None:
        m2 = 0.0

    extras = {key: value for key, value in source_area.items() if key not in ("m2", "hectares", "km2")}
    return MiningArea(
        **extras,
        m2=m2,
        hectares=m2 / SQUARE_METERS_PER_HECTARE,
        km2=m2 / SQUARE_METERS_PER_KM2,
    )


def _resolve_statistics(primary: Dict[str, Any], top_level: Dict[str, Any], summary: Dict[str, Any]) -> Dict[str, Any]:
    statistics = {**_as_dict(primary.get("statistics")), **_as_dict(top_level.get("statistics"))}
    # NaN and Infinity are valid in Python-decoded JSON but never surfaced
    statistics = {
        key: value for key, value in statistics.items()
        if not (isinstance(value, float) and not math.isfinite(value))
    }

    confidence = summary.get("confidence")
    if "avgConfidence" not in statistics and _is_number(confidence):
        statistics["avgConfidence"] = confidence * 100

    mining_percentage = summary.get("mining_percentage")
    if "coveragePercentage" not in statistics and _is_number(mining_percentage):
        statistics["coveragePercentage"] = mining_percentage

    return statistics


def _is_number(value: Any) -> bool:
    return parse_numeric(value) is not None and not isinstance(value, str)


def _find_timestamp(paths: Sequence[str], sources: Sequence[Dict[str, Any]]) -> Optional[str]:
    for path in paths:
        for source in sources:
            timestamp = coerce_timestamp(get_value_by_path(source, path))
            if timestamp:
                return timestamp
    return None


def _find_duration(field_sets: Sequence[Tuple[Dict[str, Any], Sequence[Tuple[str, float]]]]) -> Optional[float]:
    for source, fields in field_sets:
        for key, divisor in fields:
            duration = coerce_duration_seconds(source.get(key), divisor)
            if duration is not None:
                return duration
    return None


def _elapsed_seconds(start: Optional[str], end: Optional[str]) -> Optional[float]:
    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return None

    diff = (end_dt - start_dt).total_seconds()
    return diff if diff >= 0 else None


def normalize_analysis_results(analysis: Any) -> Optional[CanonicalAnalysisResult]:
    """Normalize a raw analysis payload into a ``CanonicalAnalysisResult``.

    Returns ``None`` when there is no analysis to normalize; never raises for
    malformed shapes. Missing data degrades to zero counts, empty lists and
    ``None`` timestamps.
    """
    if analysis is None:
        return None

    if isinstance(analysis, CanonicalAnalysisResult):
        analysis = analysis.to_payload()

    if not is_mapping(analysis):
        logger.warning(f"⚠️ Analysis payload of type {type(analysis).__name__} is not an object, using defaults")
        analysis = {}

    top_level: Dict[str, Any] = dict(analysis)
    nested = top_level.get("results")
    primary: Dict[str, Any] = dict(nested) if is_mapping(nested) and len(nested) > 0 else top_level

    summary = {**_as_dict(primary.get("summary")), **_as_dict(top_level.get("summary"))}

    tiles = _first_list(primary.get("tiles"), top_level.get("tiles"))
    detections = _first_list(primary.get("detections"), top_level.get("detections"))

    total_tiles = _first_count(primary.get("totalTiles"), summary.get("total_tiles"), default=len(tiles))
    tiles_processed = _first_count(primary.get("tilesProcessed"), default=total_tiles)
    tiles_with_mining = _first_count(
        primary.get("tilesWithMining"),
        summary.get("tiles_with_detections"),
        default=count_tiles_with_mining(tiles),
    )
    detection_count = _first_count(
        primary.get("detectionCount"),
        summary.get("mine_block_count"),
        default=len(detections),
    )

    total_mining_area = _resolve_mining_area(primary, top_level, summary)
    statistics = _resolve_statistics(primary, top_level, summary)

    merged_blocks = _first_present(
        primary.get("mergedBlocks"),
        top_level.get("mergedBlocks"),
        top_level.get("merged_blocks"),
        primary.get("merged_blocks"),
    )
    block_tracking = _first_present(
        primary.get("blockTracking"),
        top_level.get("blockTracking"),
        primary.get("block_tracking"),
        top_level.get("block_tracking"),
    )

    status = _first_present(primary.get("status"), top_level.get("status"))
    if status is not None:
        status = str(status)

    candidate_sources = [
        source for source in (
            primary,
            top_level,
            primary.get("metadata"),
            top_level.get("metadata"),
            primary.get("summary"),
            top_level.get("summary"),
            primary.get("statistics"),
            top_level.get("statistics"),
        )
        if is_mapping(source)
    ]

    raw_created_at = _find_timestamp(CREATED_AT_PATHS, candidate_sources)
    raw_completed_at = _find_timestamp(COMPLETED_AT_PATHS, candidate_sources)
    start_time = _find_timestamp(START_TIME_PATHS, candidate_sources) or raw_created_at
    end_time = _find_timestamp(END_TIME_PATHS, candidate_sources) or raw_completed_at

    duration = _find_duration((
        (primary, PAYLOAD_DURATION_FIELDS),
        (top_level, PAYLOAD_DURATION_FIELDS[:8]),
        (summary, SUMMARY_DURATION_FIELDS),
        (statistics, STATISTICS_DURATION_FIELDS),
    ))

    # A zero duration is treated as missing
    if not duration:
        elapsed = _elapsed_seconds(start_time, end_time)
        if elapsed is not None:
            duration = elapsed

    duration_seconds = int(math.floor(duration + 0.5)) if duration is not None else None

    return CanonicalAnalysisResult(
        status=status,
        summary=summary,
        tiles=tiles,
        detections=detections,
        total_tiles=total_tiles,
        tiles_processed=tiles_processed,
        tiles_with_mining=tiles_with_mining,
        detection_count=detection_count,
        total_mining_area=total_mining_area,
        merged_blocks=merged_blocks,
        block_tracking=block_tracking,
        statistics=statistics,
        start_time=start_time,
        end_time=end_time,
        created_at=raw_created_at or start_time,
        completed_at=raw_completed_at or end_time,
        duration_seconds=duration_seconds,
        passthrough=primary,
    )
