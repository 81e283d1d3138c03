"""FastAPI routes for the read-only segment catalog."""

from fastapi import APIRouter, Query

from src.api.schemas import (
    BundleResponse,
    CatalogResponse,
    CustomInputResponse,
    SegmentDefinitionResponse,
)
from src.catalog.resolver import DEFAULT_CATALOG

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("", response_model=CatalogResponse)
def get_catalog(category: str | None = Query(None)) -> CatalogResponse:
    """List segment definitions and bundles.

    Args:
        category: Restrict segments to one category (optional).
    """
    segments = [
        SegmentDefinitionResponse(
            id=s.id,
            name=s.name,
            category=s.category,
            description=s.description,
            requires_input=(
                CustomInputResponse(
                    key=s.requires_input.key,
                    label=s.requires_input.label,
                    default=s.requires_input.default,
                )
                if s.requires_input
                else None
            ),
            unavailable=s.unavailable,
            metric_keys=s.metric_keys,
        )
        for s in DEFAULT_CATALOG.segments(category)
    ]
    bundles = [
        BundleResponse(
            id=b.id, name=b.name, description=b.description, segment_ids=list(b.segment_ids)
        )
        for b in DEFAULT_CATALOG.bundles()
    ]
    return CatalogResponse(segments=segments, bundles=bundles)
