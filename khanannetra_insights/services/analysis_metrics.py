"""
Derived metrics for analysis results: tile area coverage and block confidence.

Both entry points are pure functions over already-fetched payloads. Malformed
or missing numbers simply contribute nothing.
"""

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Set

from ..models.schemas import (
    CanonicalAnalysisResult, ConfidenceMetrics, ConfidenceSource, TileAreaMetrics
)
from ..utils.numeric import (
    AREA_PER_PIXEL_M2,
    SQUARE_METERS_PER_HECTARE,
    clamp_percent,
    is_mapping,
    parse_numeric,
)

logger = logging.getLogger(__name__)

MOSAIC_MARKER = "mosaic"


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _properties(block: Any) -> Dict[str, Any]:
    """GeoJSON features keep their attributes under ``properties``; flat blocks don't."""
    if is_mapping(block):
        props = block.get("properties")
        if props is not None:
            return props if is_mapping(props) else {}
        return block
    return {}


def _as_payload(results: Any) -> Any:
    if isinstance(results, CanonicalAnalysisResult):
        return results.to_payload()
    return results


def get_block_area_m2(block: Any) -> float:
    """Block area in m² from ``area_m2``, ``area_ha`` or a pixel count."""
    props = _properties(block)

    area_m2 = parse_numeric(_coalesce(props.get("area_m2"), props.get("areaM2")))
    if area_m2 is not None:
        return area_m2

    area_ha = parse_numeric(_coalesce(props.get("area_ha"), props.get("areaHa")))
    if area_ha is not None:
        return area_ha * SQUARE_METERS_PER_HECTARE

    area_px = parse_numeric(_coalesce(props.get("area_px"), props.get("areaPx")))
    if area_px is not None:
        return area_px * AREA_PER_PIXEL_M2

    return 0.0


def is_mosaic_tile(tile: Any) -> bool:
    if not is_mapping(tile):
        return False
    tile_id = str(_coalesce(tile.get("tile_id"), tile.get("tileId"), "")).lower()
    status = str(_coalesce(tile.get("status"), "")).lower()
    return tile_id == MOSAIC_MARKER or status == MOSAIC_MARKER


def get_tile_area_m2(tile: Any) -> float:
    """Tile footprint in m²: explicit area, else mask shape times pixel area."""
    if not is_mapping(tile):
        return 0.0

    direct_area = parse_numeric(_coalesce(tile.get("total_area_m2"), tile.get("totalAreaM2")))
    if direct_area is not None and direct_area > 0:
        return direct_area

    mask_shape = tile.get("mask_shape")
    if isinstance(mask_shape, (list, tuple)) and len(mask_shape) >= 2:
        height = parse_numeric(mask_shape[0])
        width = parse_numeric(mask_shape[1])
        if height is not None and width is not None and height > 0 and width > 0:
            area = height * width * AREA_PER_PIXEL_M2
            if math.isfinite(area):
                return area

    return 0.0


def _tile_blocks(tile: Dict[str, Any], *keys: str) -> List[Any]:
    for key in keys:
        blocks = tile.get(key)
        if isinstance(blocks, list):
            return blocks
    return []


def get_tile_mining_area_m2(tile: Any, tile_area: Optional[float] = None) -> float:
    """Mining area of one tile, capped at the tile's own area.

    Block areas are summed once per block id; without blocks the tile's
    mining percentage (fraction or percent) is applied to the tile area.
    """
    if not is_mapping(tile):
        return 0.0

    blocks = _tile_blocks(tile, "mine_blocks", "mineBlocks")
    effective_tile_area = tile_area if tile_area is not None else get_tile_area_m2(tile)

    if blocks:
        seen_block_ids: Set[str] = set()
        total_block_area = 0.0
        for index, block in enumerate(blocks):
            area = get_block_area_m2(block)
            if area <= 0:
                continue

            props = _properties(block)
            raw_id = _coalesce(props.get("block_id"), props.get("id"), props.get("tile_block_id"))
            key = f"id:{raw_id}" if raw_id is not None else f"idx:{index}"
            if key in seen_block_ids:
                continue

            seen_block_ids.add(key)
            total_block_area += area

        if effective_tile_area > 0:
            return min(total_block_area, effective_tile_area)
        return total_block_area

    raw_percentage = parse_numeric(_coalesce(tile.get("mining_percentage"), tile.get("miningPercentage")))
    if effective_tile_area > 0 and raw_percentage is not None:
        fraction = raw_percentage / 100 if raw_percentage > 1 else raw_percentage
        if fraction >= 0:
            return effective_tile_area * min(fraction, 1.0)

    return 0.0


def derive_tile_area_metrics(tiles: Optional[Iterable[Any]]) -> TileAreaMetrics:
    """Aggregate tile and mining area across tiles.

    Mosaic tiles repeat area already counted by the individual tiles, so they
    are left out whenever at least one regular tile is present.
    """
    tile_list = list(tiles) if tiles else []
    if not tile_list:
        return TileAreaMetrics(total_tile_area_m2=0.0, total_mining_area_m2=0.0, coverage_pct=None)

    non_mosaic_tiles = [tile for tile in tile_list if not is_mosaic_tile(tile)]
    candidate_tiles = non_mosaic_tiles or tile_list

    total_tile_area = 0.0
    total_mining_area = 0.0
    for tile in candidate_tiles:
        tile_area = get_tile_area_m2(tile)
        if not tile_area > 0:
            continue
        if not math.isfinite(total_tile_area + tile_area):
            logger.warning(f"⚠️ Skipping tile {tile.get('tile_id')}: area total would overflow")
            continue

        total_tile_area += tile_area
        mining_area = get_tile_mining_area_m2(tile, tile_area)
        if mining_area > 0:
            total_mining_area += min(mining_area, tile_area)

    coverage_pct = None
    if total_tile_area > 0:
        ratio = total_mining_area / total_tile_area * 100
        if math.isfinite(ratio):
            coverage_pct = min(ratio, 100.0)

    return TileAreaMetrics(
        total_tile_area_m2=total_tile_area,
        total_mining_area_m2=total_mining_area,
        coverage_pct=coverage_pct,
    )


def normalize_confidence_value(value: Any) -> Optional[float]:
    """Confidence as a 0-100 percentage; values <= 1 are read as fractions."""
    numeric = parse_numeric(value)
    if numeric is None:
        return None
    return clamp_percent(numeric if numeric > 1 else numeric * 100)


class _ConfidenceSampler:
    """Collects one confidence sample per physical block."""

    def __init__(self) -> None:
        self.samples: List[float] = []
        self._seen_keys: Set[str] = set()

    def register(self, identifier: Any, fallback_prefix: str, fallback_index: int, raw_value: Any) -> None:
        normalized = normalize_confidence_value(raw_value)
        if normalized is None:
            return

        if identifier is not None and identifier != "":
            key = f"id:{str(identifier).lower()}"
        else:
            key = f"{fallback_prefix}:{fallback_index}"

        if key in self._seen_keys:
            return

        self._seen_keys.add(key)
        self.samples.append(normalized)


def _tracked_blocks(results: Dict[str, Any]) -> Any:
    block_tracking = results.get("blockTracking")
    snake_tracking = results.get("block_tracking")
    return _coalesce(
        block_tracking.get("blocks") if is_mapping(block_tracking) else None,
        snake_tracking.get("blocks") if is_mapping(snake_tracking) else None,
        results.get("trackedBlocks"),
        results.get("tracked_blocks"),
    )


def _merged_features(results: Dict[str, Any]) -> List[Any]:
    collection = _coalesce(
        results.get("mergedBlocks"),
        results.get("merged_blocks"),
        results.get("merged_block_collection"),
        results.get("mergedBlockGeoJson"),
    )
    if is_mapping(collection) and isinstance(collection.get("features"), list):
        return collection["features"]
    if isinstance(collection, list):
        return collection
    return []


def collect_block_confidence_samples(results: Any) -> List[float]:
    """Confidence samples from tracked blocks, merged features and tile blocks, in that order."""
    results = _as_payload(results)
    if not is_mapping(results):
        return []

    sampler = _ConfidenceSampler()

    tracked = _tracked_blocks(results)
    if isinstance(tracked, list):
        for index, block in enumerate(tracked):
            if not is_mapping(block):
                continue
            sampler.register(
                _coalesce(block.get("persistentId"), block.get("persistent_id"), block.get("blockId"), block.get("block_id")),
                "tracked",
                index,
                _coalesce(block.get("avgConfidence"), block.get("avg_confidence"), block.get("confidence")),
            )

    for index, feature in enumerate(_merged_features(results)):
        props = _properties(feature)
        sampler.register(
            _coalesce(props.get("persistent_id"), props.get("persistentId"), props.get("block_id"), props.get("id")),
            "merged",
            index,
            _coalesce(props.get("avg_confidence"), props.get("confidence"), props.get("mean_confidence")),
        )

    tiles = results.get("tiles")
    for tile_index, tile in enumerate(tiles if isinstance(tiles, list) else []):
        if not is_mapping(tile):
            continue
        tile_id = _coalesce(tile.get("tile_id"), tile.get("tileId"))
        for block_index, block in enumerate(_tile_blocks(tile, "mine_blocks", "blocks")):
            props = _properties(block)
            identifier = _coalesce(
                props.get("persistent_id"),
                props.get("persistentId"),
                props.get("block_id"),
                props.get("blockId"),
                f"{tile_id}-{block_index}" if tile_id else None,
            )
            sampler.register(
                identifier,
                f"tile-{tile_index}",
                block_index,
                _coalesce(props.get("avg_confidence"), props.get("confidence"), props.get("mean_confidence")),
            )

    return sampler.samples


def _summary_confidence_fallback(results: Any) -> Optional[float]:
    if not is_mapping(results):
        return None

    summary = results.get("summary")
    summary = summary if is_mapping(summary) else {}
    statistics = _coalesce(results.get("statistics"), results.get("summary_statistics"), results.get("stats"))
    statistics = statistics if is_mapping(statistics) else {}

    for value in (
        summary.get("confidence"),
        statistics.get("avgConfidence"),
        statistics.get("averageConfidence"),
        statistics.get("confidence"),
    ):
        normalized = normalize_confidence_value(value)
        if normalized is not None:
            return normalized
    return None


def derive_confidence_metrics(results: Any) -> ConfidenceMetrics:
    """Average, max and min block confidence, deduplicated by persistent id.

    Falls back to the summary/statistics confidence when no block carries one.
    """
    results = _as_payload(results)
    samples = collect_block_confidence_samples(results)

    if samples:
        return ConfidenceMetrics(
            average_pct=sum(samples) / len(samples),
            max_pct=max(samples),
            min_pct=min(samples),
            sample_count=len(samples),
            source=ConfidenceSource.SAMPLES,
        )

    fallback = _summary_confidence_fallback(results)
    return ConfidenceMetrics(
        average_pct=fallback,
        max_pct=fallback,
        min_pct=fallback,
        sample_count=1 if fallback is not None else 0,
        source=ConfidenceSource.SUMMARY,
    )
