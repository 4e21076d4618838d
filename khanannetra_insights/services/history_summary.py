"""
History view aggregation: headline summary and mine-block table rows for a
stored analysis record.
"""

import logging
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Tuple

from shapely.geometry import shape

from ..models.schemas import DerivedSummary, MineBlockRow
from ..utils.formatting import format_decimal, format_duration, format_hectares, format_percent
from ..utils.numeric import (
    SQUARE_METERS_PER_HECTARE,
    SQUARE_METERS_PER_KM2,
    is_mapping,
    parse_numeric,
)
from .analysis_metrics import (
    derive_confidence_metrics,
    derive_tile_area_metrics,
    normalize_confidence_value,
)
from .result_normalizer import normalize_analysis_results

logger = logging.getLogger(__name__)

SOURCE_TILE = "Tile"
SOURCE_MERGED = "Merged"


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _first_truthy(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _record_results(record: Any) -> Any:
    if is_mapping(record):
        return record.get("results")
    return getattr(record, "results", None)


def extract_summary(record: Any) -> Optional[DerivedSummary]:
    """Headline numbers for one analysis record, or ``None`` without results."""
    raw_results = _record_results(record)
    if not raw_results:
        return None

    results = normalize_analysis_results(raw_results)
    if results is None:
        return None

    summary = results.summary
    statistics = results.statistics
    tile_metrics = derive_tile_area_metrics(results.tiles)

    coverage_candidate = _coalesce(
        parse_numeric(statistics.get("coveragePercentage")),
        parse_numeric(statistics.get("coverage_percentage")),
        parse_numeric(summary.get("mining_percentage")),
    )

    coverage_pct = tile_metrics.coverage_pct
    if coverage_pct is None and coverage_candidate is not None:
        coverage_pct = coverage_candidate if coverage_candidate > 1 else coverage_candidate * 100

    if tile_metrics.total_mining_area_m2 > 0:
        mining_area_m2 = tile_metrics.total_mining_area_m2
    else:
        mining_area_m2 = results.total_mining_area.m2

    confidence = derive_confidence_metrics(results)
    mining_area_km2 = mining_area_m2 / SQUARE_METERS_PER_KM2

    display = {
        "coverage": format_percent(coverage_pct),
        "miningArea": f"{format_hectares(mining_area_m2)} ha",
        "miningAreaKm2": f"{format_decimal(mining_area_km2, 3)} km²",
        "avgConfidence": format_percent(confidence.average_pct),
        "duration": format_duration(results.duration_seconds),
    }

    return DerivedSummary(
        total_tiles=results.total_tiles,
        tiles_with_detections=results.tiles_with_mining,
        detection_count=results.detection_count,
        coverage_pct=coverage_pct,
        avg_confidence_pct=confidence.average_pct,
        max_confidence_pct=confidence.max_pct,
        min_confidence_pct=confidence.min_pct,
        mining_area_ha=mining_area_m2 / SQUARE_METERS_PER_HECTARE,
        mining_area_km2=mining_area_km2,
        duration_seconds=results.duration_seconds,
        confidence_source=confidence.source,
        display=display,
    )


def _coerce_bounds(value: Any) -> Optional[Tuple[float, float, float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) != 4:
        return None
    coerced = [parse_numeric(item) for item in value]
    if any(item is None for item in coerced):
        return None
    return tuple(coerced)


def _geometry_centroid_and_bounds(feature: Any) -> Tuple[Optional[List[float]], Optional[Tuple[float, float, float, float]]]:
    """Centroid ``[lon, lat]`` and bounds computed from a GeoJSON geometry."""
    geometry = feature.get("geometry") if is_mapping(feature) else None
    if not is_mapping(geometry):
        return None, None

    try:
        shapely_geom = shape(geometry)
    except Exception as e:  # noqa: BLE001 - malformed geometry just means no fallback
        logger.debug(f"Could not read block geometry: {e}")
        return None, None

    if shapely_geom.is_empty:
        return None, None

    centroid = shapely_geom.centroid
    return [centroid.x, centroid.y], tuple(float(value) for value in shapely_geom.bounds)


def _area_ha(props: Dict[str, Any]) -> float:
    direct_ha = parse_numeric(_coalesce(props.get("area_ha"), props.get("areaHa")))
    if direct_ha is not None:
        return direct_ha
    area_m2 = parse_numeric(_coalesce(props.get("area_m2"), props.get("areaM2")))
    if area_m2 is not None:
        return area_m2 / SQUARE_METERS_PER_HECTARE
    return 0.0


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value else None


class _BlockRowRegistry:
    """Rows keyed by id; a row registered twice is merged field by field."""

    def __init__(self) -> None:
        self._rows: Dict[str, MineBlockRow] = {}

    def register(self, row: MineBlockRow) -> None:
        key = row.id or f"{row.source}-{row.label}"
        existing = self._rows.get(key)
        if existing is None:
            self._rows[key] = row
            return

        merged_source = SOURCE_MERGED if SOURCE_MERGED in (existing.source, row.source) else existing.source
        self._rows[key] = row.model_copy(update={
            "area_ha": _coalesce(row.area_ha, existing.area_ha),
            "confidence_pct": _coalesce(row.confidence_pct, existing.confidence_pct),
            "tile_id": _coalesce(row.tile_id, existing.tile_id),
            "persistent_id": _coalesce(row.persistent_id, existing.persistent_id),
            "block_index": _coalesce(row.block_index, existing.block_index),
            "centroid_lat": _coalesce(row.centroid_lat, existing.centroid_lat),
            "centroid_lon": _coalesce(row.centroid_lon, existing.centroid_lon),
            "bounds": _coalesce(row.bounds, existing.bounds),
            "source": merged_source,
            "is_merged": existing.is_merged or row.is_merged,
        })

    def sorted_rows(self) -> List[MineBlockRow]:
        return sorted(self._rows.values(), key=cmp_to_key(_compare_rows))


def _compare_rows(a: MineBlockRow, b: MineBlockRow) -> float:
    if a.block_index is not None and b.block_index is not None:
        return a.block_index - b.block_index
    if a.source != b.source:
        return -1 if a.source == SOURCE_MERGED else 1
    return (b.area_ha or 0) - (a.area_ha or 0)


def _register_tracked_blocks(registry: _BlockRowRegistry, block_tracking: Any) -> None:
    blocks = block_tracking.get("blocks") if is_mapping(block_tracking) else None
    if not isinstance(blocks, list):
        return

    for index, block in enumerate(blocks):
        if not is_mapping(block):
            continue

        row_id = _coalesce(
            block.get("persistentId"), block.get("persistent_id"),
            block.get("blockId"), block.get("block_id"), f"tracked-{index}",
        )
        centroid = _coalesce(
            block.get("centroid") if isinstance(block.get("centroid"), list) else None,
            block.get("label_position") if isinstance(block.get("label_position"), list) else None,
        )
        bounds = _coerce_bounds(block.get("bounds"))
        if centroid is None or bounds is None:
            geom_centroid, geom_bounds = _geometry_centroid_and_bounds(block)
            centroid = _coalesce(centroid, geom_centroid)
            bounds = _coalesce(bounds, geom_bounds)

        area_ha = block.get("areaHa")
        if not isinstance(area_ha, (int, float)) or isinstance(area_ha, bool):
            area_m2 = parse_numeric(_coalesce(block.get("areaM2"), block.get("area_m2")))
            area_ha = area_m2 / SQUARE_METERS_PER_HECTARE if area_m2 is not None else 0.0

        sequence = block.get("sequence")
        block_index = sequence if isinstance(sequence, (int, float)) and not isinstance(sequence, bool) else block.get("block_index")

        registry.register(MineBlockRow(
            id=str(row_id),
            label=str(_first_truthy(
                block.get("name"), block.get("label"), block.get("blockId"), block.get("block_id"),
            ) or f"Block {index + 1}"),
            tile_id=_optional_str(_first_truthy(block.get("tileId"), block.get("tile_id"))),
            area_ha=area_ha,
            confidence_pct=normalize_confidence_value(_coalesce(
                block.get("avgConfidence"), block.get("avg_confidence"), block.get("confidence"),
            )),
            source=SOURCE_TILE,
            persistent_id=_optional_str(_first_truthy(block.get("persistentId"), block.get("persistent_id"))),
            block_index=parse_numeric(block_index),
            centroid_lat=parse_numeric(centroid[1]) if centroid and len(centroid) > 1 else None,
            centroid_lon=parse_numeric(centroid[0]) if centroid else None,
            bounds=bounds,
            is_merged=bool(_coalesce(block.get("isMerged"), block.get("is_merged"))),
        ))


def _feature_location(feature: Any, props: Dict[str, Any]) -> Tuple[Optional[List[Any]], Optional[Tuple[float, float, float, float]]]:
    centroid = _coalesce(
        props.get("label_position") if isinstance(props.get("label_position"), list) else None,
        props.get("centroid") if isinstance(props.get("centroid"), list) else None,
    )
    bounds = _coerce_bounds(props.get("bbox"))
    if centroid is None or bounds is None:
        geom_centroid, geom_bounds = _geometry_centroid_and_bounds(feature)
        centroid = _coalesce(centroid, geom_centroid)
        bounds = _coalesce(bounds, geom_bounds)
    return centroid, bounds


def _feature_props(feature: Any) -> Dict[str, Any]:
    if not is_mapping(feature):
        return {}
    props = feature.get("properties")
    if props is None:
        return feature
    return props if is_mapping(props) else {}


def _register_merged_features(registry: _BlockRowRegistry, merged_blocks: Any) -> None:
    features = merged_blocks.get("features") if is_mapping(merged_blocks) else None
    if not isinstance(features, list):
        return

    for index, feature in enumerate(features):
        props = _feature_props(feature)
        row_id = _coalesce(
            props.get("persistent_id"), props.get("persistentId"),
            props.get("block_id"), props.get("id"), f"merged-{index}",
        )
        centroid, bounds = _feature_location(feature, props)
        centroid_lat = _coalesce(centroid[1] if centroid and len(centroid) > 1 else None, props.get("centroid_lat"))
        centroid_lon = _coalesce(centroid[0] if centroid else None, props.get("centroid_lon"))

        registry.register(MineBlockRow(
            id=f"merged-{row_id}",
            label=str(_first_truthy(props.get("name"), props.get("block_id")) or f"Merged Block {index + 1}"),
            tile_id=_optional_str(props.get("tile_id")),
            area_ha=_area_ha(props),
            confidence_pct=normalize_confidence_value(_coalesce(
                props.get("avg_confidence"), props.get("confidence"), props.get("mean_confidence"),
            )),
            source=SOURCE_MERGED,
            is_merged=True,
            persistent_id=_optional_str(_first_truthy(props.get("persistent_id"), props.get("persistentId"))),
            block_index=parse_numeric(_coalesce(props.get("block_index"), props.get("index"))),
            centroid_lat=parse_numeric(centroid_lat),
            centroid_lon=parse_numeric(centroid_lon),
            bounds=bounds,
        ))


def _register_tile_blocks(registry: _BlockRowRegistry, tiles: List[Any]) -> None:
    for tile_index, tile in enumerate(tiles):
        if not is_mapping(tile):
            continue
        blocks = tile.get("mine_blocks")
        if not isinstance(blocks, list) or not blocks:
            continue

        tile_label = _coalesce(tile.get("tile_label"), tile.get("tileLabel"), tile.get("tile_id"), tile.get("tileId"))
        if tile_label is None:
            raw_index = tile.get("tile_index")
            if isinstance(raw_index, (int, float)) and not isinstance(raw_index, bool):
                tile_label = f"tile_{raw_index}"
            else:
                tile_label = f"Tile {tile_index + 1}"
        display_tile_id = _coalesce(tile.get("tile_id"), tile.get("tileId"), tile_label)

        for block_index, block in enumerate(blocks):
            props = _feature_props(block)
            row_id = _coalesce(
                props.get("persistent_id"), props.get("persistentId"),
                props.get("block_id"), props.get("blockId"),
                f"{display_tile_id}-block-{block_index + 1}",
            )
            centroid, bounds = _feature_location(block, props)

            registry.register(MineBlockRow(
                id=f"tile-{row_id}",
                label=str(props.get("name") or f"{tile_label} · Block {block_index + 1}"),
                tile_id=str(display_tile_id),
                area_ha=_area_ha(props),
                confidence_pct=normalize_confidence_value(_coalesce(
                    props.get("avg_confidence"), props.get("confidence"), props.get("mean_confidence"),
                )),
                source=SOURCE_TILE,
                is_merged=bool(props.get("is_merged")),
                persistent_id=_optional_str(_first_truthy(props.get("persistent_id"), props.get("persistentId"))),
                block_index=parse_numeric(_coalesce(props.get("block_index"), props.get("index"))),
                centroid_lat=parse_numeric(centroid[1]) if centroid and len(centroid) > 1 else None,
                centroid_lon=parse_numeric(centroid[0]) if centroid else None,
                bounds=bounds,
            ))


def build_mine_block_rows(record: Any) -> List[MineBlockRow]:
    """Mine-block table rows from tracked blocks, merged features and tile blocks."""
    raw_results = _record_results(record)
    if not raw_results:
        return []

    results = normalize_analysis_results(raw_results)
    if results is None:
        return []

    registry = _BlockRowRegistry()
    _register_tracked_blocks(registry, results.block_tracking)
    _register_merged_features(registry, results.merged_blocks)
    _register_tile_blocks(registry, results.tiles)

    rows = registry.sorted_rows()
    logger.debug(f"Built {len(rows)} mine block rows")
    return rows
