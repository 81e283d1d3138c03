"""Catalog resolution and segment payload rendering.

``resolve_selection`` turns a tenant's selection (segment and bundle IDs)
into the ordered list of creatable segment IDs a job is created with.
``build_segment_payload`` renders one definition into the platform's
segment body for a specific account.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from src.catalog.definitions import (
    ALL_TIME_DAYS,
    BUNDLES,
    METRIC_ALIASES,
    SEGMENTS,
    Bundle,
    Condition,
    ConsentCondition,
    MetricCondition,
    PredictiveCondition,
    PropertyCondition,
    SegmentDefinition,
)
from src.errors.domain import NothingToCreateError, ValidationError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"^\{(\w+)\}$")


class SegmentCatalog:
    """Read-only lookup over segment definitions and bundles."""

    def __init__(
        self,
        segments: Iterable[SegmentDefinition] = SEGMENTS,
        bundles: Iterable[Bundle] = BUNDLES,
    ) -> None:
        self._segments = {s.id: s for s in segments}
        self._bundles = {b.id: b for b in bundles}

    def get(self, segment_id: str) -> SegmentDefinition | None:
        return self._segments.get(segment_id)

    def get_bundle(self, bundle_id: str) -> Bundle | None:
        return self._bundles.get(bundle_id)

    def segments(self, category: str | None = None) -> list[SegmentDefinition]:
        if category is None:
            return list(self._segments.values())
        return [s for s in self._segments.values() if s.category == category]

    def bundles(self) -> list[Bundle]:
        return list(self._bundles.values())


DEFAULT_CATALOG = SegmentCatalog()


def resolve_selection(
    selection_ids: Iterable[str],
    catalog: SegmentCatalog = DEFAULT_CATALOG,
) -> list[str]:
    """Expand a selection into the creatable segment IDs.

    Bundles expand one level only: a bundle member that is itself a bundle
    ID is not expanded (and, not being a segment, is dropped). The result
    keeps first-seen order, contains no duplicates, and excludes segments
    marked unavailable or unknown to the catalog.

    Args:
        selection_ids: Segment and/or bundle IDs chosen by the tenant.
        catalog: Catalog to resolve against.

    Returns:
        Ordered, deduplicated list of creatable segment IDs.

    Raises:
        NothingToCreateError: If the selection resolves to no creatable segment.
    """
    selection = list(selection_ids)
    expanded: list[str] = []
    for item_id in selection:
        bundle = catalog.get_bundle(item_id)
        if bundle is not None:
            expanded.extend(bundle.segment_ids)
        else:
            expanded.append(item_id)

    resolved: list[str] = []
    seen: set[str] = set()
    for segment_id in expanded:
        if segment_id in seen:
            continue
        seen.add(segment_id)

        definition = catalog.get(segment_id)
        if definition is None:
            logger.warning("Ignoring unknown segment ID in selection: %s", segment_id)
            continue
        if definition.unavailable:
            logger.info("Excluding unavailable segment %s from selection", segment_id)
            continue
        resolved.append(segment_id)

    if not resolved:
        raise NothingToCreateError(selection)

    return resolved


# ============================================================================
# Payload rendering
# ============================================================================


@dataclass
class SegmentPayload:
    """Rendered segment ready to send to the platform."""

    name: str
    definition: dict[str, Any]
    missing_metrics: list[str] = field(default_factory=list)
    """Metric keys whose condition groups were dropped for this account."""


def map_metric_ids(account_metrics: Mapping[str, str]) -> dict[str, str]:
    """Map logical metric keys to account metric IDs.

    Args:
        account_metrics: Account metric name -> metric ID.

    Returns:
        Logical metric key -> metric ID, for keys the account can satisfy.
    """
    metric_ids: dict[str, str] = {}
    for key, names in METRIC_ALIASES.items():
        for name in names:
            if name in account_metrics:
                metric_ids[key] = account_metrics[name]
                break
    return metric_ids


def _display(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _build_context(
    definition: SegmentDefinition,
    settings: Mapping[str, Any],
    custom_inputs: Mapping[str, str],
) -> dict[str, Any]:
    context = {key: _display(value) for key, value in settings.items()}
    context.setdefault("currency_symbol", "$")
    if definition.requires_input is not None:
        field = definition.requires_input
        raw = custom_inputs.get(field.key) or field.default
        if not str(raw).strip():
            raise ValidationError(f"Custom input '{field.key}' must not be empty")
        context["input"] = str(raw).strip()
    return context


def _resolve(value: Any, context: Mapping[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    match = _PLACEHOLDER.match(value)
    if match:
        key = match.group(1)
        if key not in context:
            raise ValidationError(f"No value for '{key}' in connection settings")
        return context[key]
    return value


def _render_condition(
    condition: Condition,
    context: Mapping[str, Any],
    metric_ids: Mapping[str, str],
) -> dict[str, Any]:
    if isinstance(condition, MetricCondition):
        days = _resolve(condition.days, context)
        rendered: dict[str, Any] = {
            "type": "profile-metric",
            "metric_id": metric_ids[condition.metric],
            "measurement": condition.measurement,
            "measurement_filter": {
                "type": "numeric",
                "operator": condition.operator,
                "value": _resolve(condition.value, context),
            },
            "timeframe_filter": {
                "type": "date",
                "operator": "in-the-last",
                "quantity": int(days) if days is not None else ALL_TIME_DAYS,
                "unit": "day",
            },
        }
        if condition.metric_filters:
            rendered["metric_filters"] = [dict(f) for f in condition.metric_filters]
        return rendered

    if isinstance(condition, PropertyCondition):
        return {
            "type": "profile-property",
            "property": condition.property,
            "filter": {
                "type": condition.filter_type,
                "operator": condition.operator,
                "value": _resolve(condition.value, context),
            },
        }

    if isinstance(condition, PredictiveCondition):
        return {
            "type": "profile-predictive-analytics",
            "dimension": condition.dimension,
            "filter": {
                "type": condition.filter_type,
                "operator": condition.operator,
                "value": _resolve(condition.value, context),
            },
        }

    if isinstance(condition, ConsentCondition):
        return {
            "type": "profile-marketing-consent",
            "consent": {
                "channel": condition.channel,
                "can_receive_marketing": condition.can_receive_marketing,
                "consent_status": {"subscription": "any"},
            },
        }

    raise TypeError(f"Unsupported condition type: {type(condition).__name__}")


def missing_metrics(definition: SegmentDefinition, metric_ids: Mapping[str, str]) -> list[str]:
    """Return the definition's metric keys the account cannot satisfy."""
    return [key for key in definition.metric_keys if key not in metric_ids]


def build_segment_payload(
    definition: SegmentDefinition,
    settings: Mapping[str, Any],
    custom_inputs: Mapping[str, str],
    metric_ids: Mapping[str, str],
    name_suffix: str = "",
) -> SegmentPayload | None:
    """Render a definition for one account.

    Condition groups that reference a metric the account does not track are
    dropped. When no group survives, the segment cannot be created for this
    account and None is returned (the caller records it as skipped).

    Args:
        definition: Catalog definition to render.
        settings: Connection thresholds (vip_threshold, lapsed_days, ...).
        custom_inputs: Tenant-supplied inputs keyed by custom input key.
        metric_ids: Logical metric key -> account metric ID.
        name_suffix: Branding suffix appended to the segment name.

    Returns:
        The rendered payload, or None when required source data is missing.

    Raises:
        ValidationError: If a custom input or setting placeholder is unusable.
    """
    context = _build_context(definition, settings, custom_inputs)
    absent = missing_metrics(definition, metric_ids)

    groups: list[dict[str, Any]] = []
    for group in definition.condition_groups:
        if any(isinstance(c, MetricCondition) and c.metric in absent for c in group):
            continue
        groups.append({"conditions": [_render_condition(c, context, metric_ids) for c in group]})

    if not groups:
        return None

    name = definition.name.format_map(context) + name_suffix
    return SegmentPayload(name=name, definition={"condition_groups": groups}, missing_metrics=absent)
