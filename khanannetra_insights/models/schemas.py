"""
Pydantic models and schemas for the KhananNetra analysis insights layer.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

from ..utils.numeric import as_utc, parse_numeric


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    REQUESTING = "requesting"
    PREPROCESSING = "preprocessing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfidenceSource(str, Enum):
    SAMPLES = "samples"
    SUMMARY = "summary"


class MiningArea(BaseModel):
    """Total mining area; hectares and km² are always derived from ``m2``."""
    m2: float = Field(0.0, description="Area in square meters")
    hectares: float = Field(0.0, description="Area in hectares")
    km2: float = Field(0.0, description="Area in square kilometers")

    model_config = {
        "extra": "allow"
    }


# Wire keys emitted for the canonical fields, in output order
CANONICAL_PAYLOAD_FIELDS = (
    "status",
    "summary",
    "tiles",
    "detections",
    "total_tiles",
    "tiles_processed",
    "tiles_with_mining",
    "detection_count",
    "total_mining_area",
    "merged_blocks",
    "block_tracking",
    "statistics",
)


class CanonicalAnalysisResult(BaseModel):
    """Normalized analysis result consumed by the dashboards."""
    status: Optional[str] = Field(None, description="processing|completed|failed|cancelled")
    summary: Dict[str, Any] = Field(default_factory=dict)
    tiles: List[Any] = Field(default_factory=list)
    detections: List[Any] = Field(default_factory=list)
    total_tiles: int = Field(0, ge=0, alias="totalTiles")
    tiles_processed: int = Field(0, ge=0, alias="tilesProcessed")
    tiles_with_mining: int = Field(0, ge=0, alias="tilesWithMining")
    detection_count: int = Field(0, ge=0, alias="detectionCount")
    total_mining_area: MiningArea = Field(default_factory=MiningArea, alias="totalMiningArea")
    merged_blocks: Optional[Any] = Field(None, alias="mergedBlocks")
    block_tracking: Optional[Any] = Field(None, alias="blockTracking")
    statistics: Dict[str, Any] = Field(default_factory=dict)
    start_time: Optional[str] = Field(None, alias="startTime")
    end_time: Optional[str] = Field(None, alias="endTime")
    created_at: Optional[str] = Field(None, alias="createdAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")
    duration_seconds: Optional[int] = Field(None, ge=0, alias="durationSeconds")
    passthrough: Dict[str, Any] = Field(
        default_factory=dict,
        exclude=True,
        description="Fields of the source payload that are not canonicalized",
    )

    model_config = {
        "populate_by_name": True
    }

    def to_payload(self) -> Dict[str, Any]:
        """Dump back to the camelCase wire shape.

        Source fields are kept; timestamp and duration variants are only
        filled in where the source did not already carry them.
        """
        payload = dict(self.passthrough)

        backfill = (
            (("startTime", "start_time", "startedAt", "started_at"), self.start_time),
            (("createdAt", "created_at"), self.created_at),
            (("endTime", "end_time"), self.end_time),
            (("completedAt", "completed_at"), self.completed_at),
            (("finishedAt", "finished_at"), self.end_time),
            (
                ("durationSeconds", "duration_seconds", "duration", "runtimeSeconds", "runtime_seconds"),
                self.duration_seconds,
            ),
        )
        for keys, value in backfill:
            if value is None:
                continue
            for key in keys:
                if key not in payload:
                    payload[key] = value

        payload.update(self.model_dump(by_alias=True, include=set(CANONICAL_PAYLOAD_FIELDS)))
        return payload


class TileAreaMetrics(BaseModel):
    """Area aggregation across the tiles of one analysis."""
    total_tile_area_m2: float = Field(0.0, ge=0.0, alias="totalTileAreaM2")
    total_mining_area_m2: float = Field(0.0, ge=0.0, alias="totalMiningAreaM2")
    coverage_pct: Optional[float] = Field(None, ge=0.0, le=100.0, alias="coveragePct")

    model_config = {
        "populate_by_name": True
    }


class ConfidenceMetrics(BaseModel):
    """Confidence statistics in percent (0-100)."""
    average_pct: Optional[float] = Field(None, alias="averagePct")
    max_pct: Optional[float] = Field(None, alias="maxPct")
    min_pct: Optional[float] = Field(None, alias="minPct")
    sample_count: int = Field(0, ge=0, alias="sampleCount")
    source: ConfidenceSource

    model_config = {
        "populate_by_name": True
    }


class DerivedSummary(BaseModel):
    """Headline numbers for one analysis in the history view."""
    total_tiles: int = Field(0, alias="totalTiles")
    tiles_with_detections: int = Field(0, alias="tilesWithDetections")
    detection_count: int = Field(0, alias="detectionCount")
    coverage_pct: Optional[float] = Field(None, alias="coveragePct")
    avg_confidence_pct: Optional[float] = Field(None, alias="avgConfidencePct")
    max_confidence_pct: Optional[float] = Field(None, alias="maxConfidencePct")
    min_confidence_pct: Optional[float] = Field(None, alias="minConfidencePct")
    mining_area_ha: Optional[float] = Field(None, alias="miningAreaHa")
    mining_area_km2: Optional[float] = Field(None, alias="miningAreaKm2")
    duration_seconds: Optional[int] = Field(None, alias="durationSeconds")
    confidence_source: ConfidenceSource = Field(ConfidenceSource.SUMMARY, alias="confidenceSource")
    display: Dict[str, str] = Field(default_factory=dict, description="Preformatted values for the history cards")

    model_config = {
        "populate_by_name": True
    }


class MineBlockRow(BaseModel):
    """One row of the mine-block table."""
    id: str
    label: str
    tile_id: Optional[str] = Field(None, alias="tileId")
    area_ha: Optional[float] = Field(None, alias="areaHa")
    confidence_pct: Optional[float] = Field(None, alias="confidencePct")
    source: str = Field(..., description="Tile or Merged")
    is_merged: bool = Field(False, alias="isMerged")
    persistent_id: Optional[str] = Field(None, alias="persistentId")
    block_index: Optional[float] = Field(None, alias="blockIndex")
    centroid_lat: Optional[float] = Field(None, alias="centroidLat")
    centroid_lon: Optional[float] = Field(None, alias="centroidLon")
    bounds: Optional[Tuple[float, float, float, float]] = None

    model_config = {
        "populate_by_name": True
    }


class AnalysisStatusUpdate(BaseModel):
    """One response of the remote analysis-status endpoint."""
    status: str = Field("processing", description="Backend pipeline status")
    progress: float = Field(0.0, description="Progress percentage")
    message: Optional[str] = None
    current_step: Optional[str] = None
    total_tiles: Optional[int] = None
    tiles_fetched: Optional[int] = None
    area_km2: Optional[float] = None
    tiles: Optional[List[Any]] = None
    error: Optional[str] = None

    model_config = {
        "extra": "allow"
    }

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> str:
        if value is None or value == "":
            return AnalysisStatus.PROCESSING.value
        return str(value).lower()

    @field_validator("progress", mode="before")
    @classmethod
    def _coerce_progress(cls, value: Any) -> float:
        parsed = parse_numeric(value)
        return parsed if parsed is not None else 0.0

    @field_validator("total_tiles", "tiles_fetched", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> Optional[int]:
        parsed = parse_numeric(value)
        return int(parsed) if parsed is not None else None

    @field_validator("area_km2", mode="before")
    @classmethod
    def _coerce_area(cls, value: Any) -> Optional[float]:
        return parse_numeric(value)

    @field_validator("error", "message", "current_step", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @property
    def is_completed(self) -> bool:
        return self.status == AnalysisStatus.COMPLETED.value or self.progress >= 100

    @property
    def is_failed(self) -> bool:
        return self.status == AnalysisStatus.FAILED.value or bool(self.error)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AnalysisSnapshot(BaseModel):
    """Caller-owned state of the analysis currently being tracked.

    Snapshots are immutable; each change produces a copy with ``version + 1``.
    """
    analysis_id: str = Field(..., alias="analysisId")
    aoi_id: Optional[str] = Field(None, alias="aoiId")
    status: AnalysisStatus = AnalysisStatus.PROCESSING
    start_time: datetime = Field(..., alias="startTime")
    end_time: Optional[datetime] = Field(None, alias="endTime")
    duration: Optional[int] = Field(None, description="Seconds between start and end")
    progress: float = Field(0.0, ge=0.0, le=100.0)
    message: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    version: int = Field(0, ge=0)

    model_config = {
        "populate_by_name": True,
        "frozen": True
    }

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=datetime.now)
