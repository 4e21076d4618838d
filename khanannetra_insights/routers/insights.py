"""
Insights router exposing result normalization and derived metrics.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..models.schemas import (
    ConfidenceMetrics, DerivedSummary, MineBlockRow, TileAreaMetrics
)
from ..services.analysis_metrics import derive_confidence_metrics, derive_tile_area_metrics
from ..services.history_summary import build_mine_block_rows, extract_summary
from ..services.result_normalizer import normalize_analysis_results
from ..services.status_poller import (
    ANALYSIS_STEPS, AnalysisStatusClient, current_step_index, step_state
)

logger = logging.getLogger(__name__)

router = APIRouter()


class NormalizeRequest(BaseModel):
    analysis: Optional[Dict[str, Any]] = Field(None, description="Raw analysis payload as returned by the backend")

    model_config = {
        "extra": "ignore"
    }


class TileMetricsRequest(BaseModel):
    tiles: List[Any] = Field(default_factory=list, description="Tile records of one analysis")

    model_config = {
        "extra": "ignore"
    }


class ResultsRequest(BaseModel):
    results: Optional[Dict[str, Any]] = Field(None, description="Raw or canonical analysis results")

    model_config = {
        "extra": "ignore"
    }


@router.post("/normalize")
async def normalize_results(payload: NormalizeRequest) -> Optional[Dict[str, Any]]:
    """Normalize a raw analysis payload into the canonical result shape."""
    try:
        result = normalize_analysis_results(payload.analysis)
    except Exception as e:
        logger.exception("Normalization failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal server error: {str(e)}"
        )
    return result.to_payload() if result is not None else None


@router.post("/metrics/tiles", response_model=TileAreaMetrics)
async def tile_area_metrics(payload: TileMetricsRequest):
    """Tile area, mining area and coverage percentage."""
    return derive_tile_area_metrics(payload.tiles)


@router.post("/metrics/confidence", response_model=ConfidenceMetrics)
async def confidence_metrics(payload: ResultsRequest):
    """Block confidence statistics for an analysis result."""
    return derive_confidence_metrics(payload.results)


@router.post("/summary", response_model=DerivedSummary)
async def history_summary(payload: ResultsRequest):
    """Headline summary used by the analysis history view."""
    summary = extract_summary({"results": payload.results})

    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No analysis results to summarize"
        )

    return summary


@router.post("/blocks", response_model=List[MineBlockRow])
async def mine_block_rows(payload: ResultsRequest):
    """Mine-block table rows for an analysis result."""
    return build_mine_block_rows({"results": payload.results})


def get_status_client() -> AnalysisStatusClient:
    return AnalysisStatusClient()


@router.get("/analysis/{analysis_id}/progress")
async def analysis_progress(analysis_id: str, client: AnalysisStatusClient = Depends(get_status_client)):
    """Poll the backend once and return progress with live metrics."""
    update = await asyncio.to_thread(client.fetch_status, analysis_id)
    payload = update.payload()

    return {
        "analysisId": analysis_id,
        "status": update.status,
        "progress": update.progress,
        "message": update.message,
        "currentStep": update.current_step,
        "stepIndex": current_step_index(update.current_step),
        "steps": [
            {
                "key": step.key,
                "label": step.label,
                "progressRange": list(step.progress_range),
                "state": step_state(index, update.current_step),
            }
            for index, step in enumerate(ANALYSIS_STEPS)
        ],
        "tilesFetched": update.tiles_fetched,
        "totalTiles": update.total_tiles,
        "tileMetrics": derive_tile_area_metrics(update.tiles).model_dump(by_alias=True),
        "confidence": derive_confidence_metrics(payload).model_dump(by_alias=True, mode="json"),
        "isComplete": update.is_completed,
        "isFailed": update.is_failed,
        "error": update.error,
    }


@router.post("/analysis/{analysis_id}/stop")
async def stop_analysis(analysis_id: str, client: AnalysisStatusClient = Depends(get_status_client)):
    """Ask the backend to stop a running analysis."""
    backend_response = await asyncio.to_thread(client.stop_analysis, analysis_id)
    logger.info(f"🛑 Stop requested for analysis {analysis_id}")
    return {
        "analysisId": analysis_id,
        "status": "cancelled",
        "backend": backend_response,
    }
