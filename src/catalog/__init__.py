"""Segment catalog: definitions, bundles and selection resolution."""

from src.catalog.definitions import BUNDLES, SEGMENTS, Bundle, SegmentDefinition
from src.catalog.resolver import (
    DEFAULT_CATALOG,
    SegmentCatalog,
    SegmentPayload,
    build_segment_payload,
    map_metric_ids,
    missing_metrics,
    resolve_selection,
)

__all__ = [
    "BUNDLES",
    "SEGMENTS",
    "Bundle",
    "SegmentDefinition",
    "DEFAULT_CATALOG",
    "SegmentCatalog",
    "SegmentPayload",
    "build_segment_payload",
    "map_metric_ids",
    "missing_metrics",
    "resolve_selection",
]
