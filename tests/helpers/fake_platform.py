"""In-memory stand-in for the marketing platform client.

FakePlatformClient answers ``list_metrics`` and ``create_segment`` from
scripted state so batch passes can run without HTTP. Responses are chosen
per segment name: a name in ``throttle`` gets a 429, a name in ``reject``
a 400, a name in ``existing`` a 409, anything else a 201.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

from src.catalog.definitions import Bundle, MetricCondition, PropertyCondition, SegmentDefinition
from src.catalog.resolver import SegmentCatalog
from src.services.platform_client import SegmentCreateResponse

TENANT_ID = "tenant-1"
OTHER_TENANT_ID = "tenant-2"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

STEADY_THROTTLE = "Request was throttled. Expected available in 120 seconds."
DAILY_THROTTLE = "Request was throttled. Daily limit of segment creations reached."


def _property_segment(number: int) -> SegmentDefinition:
    return SegmentDefinition(
        id=f"seg-{number:02d}",
        name=f"Segment {number:02d}",
        category="Test",
        description=f"Test segment {number}",
        condition_groups=(
            (PropertyCondition("properties['score']", "numeric", "greater-than", number),),
        ),
    )


TEST_SEGMENTS = tuple(_property_segment(n) for n in range(1, 11)) + (
    SegmentDefinition(
        id="buyers",
        name="Buyers",
        category="Test",
        description="Placed at least one order",
        condition_groups=((MetricCondition("placed-order", "greater-than", 0),),),
    ),
    SegmentDefinition(
        id="retired",
        name="Retired",
        category="Test",
        description="Cannot be created through the API",
        unavailable=True,
    ),
)

TEST_BUNDLES = (
    Bundle("first-four", "First Four", "Segments 1-4", ("seg-01", "seg-02", "seg-03", "seg-04")),
    Bundle("nested", "Nested", "Holds a bundle ID", ("first-four", "seg-05")),
)

TEST_CATALOG = SegmentCatalog(TEST_SEGMENTS, TEST_BUNDLES)

TEN_SEGMENTS = [f"seg-{n:02d}" for n in range(1, 11)]


class FakePlatformClient:
    """Scripted platform client usable as an async context manager."""

    def __init__(self, metrics: dict[str, str] | None = None) -> None:
        self.metrics = metrics if metrics is not None else {"Placed Order": "M-ORDER"}
        self.throttle: dict[str, str] = {}
        self.reject: dict[str, str] = {}
        self.existing: set[str] = set()
        self.created: list[str] = []
        self.list_metrics = AsyncMock(side_effect=self._list_metrics)
        self.create_segment = AsyncMock(side_effect=self._create_segment)

    async def __aenter__(self) -> "FakePlatformClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def _list_metrics(self) -> dict[str, str]:
        return dict(self.metrics)

    async def _create_segment(self, name: str, definition: dict) -> SegmentCreateResponse:
        if name in self.throttle:
            return SegmentCreateResponse(status_code=429, detail=self.throttle[name])
        if name in self.reject:
            return SegmentCreateResponse(status_code=400, detail=self.reject[name])
        if name in self.existing:
            return SegmentCreateResponse(
                status_code=409, detail=f"A segment named {name} already exists."
            )
        self.created.append(name)
        return SegmentCreateResponse(status_code=201, external_id=f"ext-{len(self.created)}")

    def factory(self, connection) -> "FakePlatformClient":
        """Client factory returning this instance for any connection."""
        return self


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now) -> None:
        self.now = now

    def __call__(self):
        return self.now


async def no_sleep(seconds: float) -> None:
    return None
