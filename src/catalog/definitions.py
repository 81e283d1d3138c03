"""Segment definition catalog.

Each definition describes a platform segment as condition groups (OR of
groups, AND within a group). Values may be ``{placeholder}`` strings that
are resolved at request time against the connection's settings and the
job's custom inputs. Metric conditions reference logical metric keys
which are mapped to the account's metric IDs by ``METRIC_ALIASES``.
"""

from dataclasses import dataclass, field
from typing import Any

# Account metric names that satisfy each logical metric key, in
# preference order.
METRIC_ALIASES: dict[str, tuple[str, ...]] = {
    "placed-order": ("Placed Order", "Ordered Product", "Order Placed", "Checkout", "Purchase"),
    "started-checkout": ("Started Checkout", "Checkout Started", "Initiated Checkout", "Begin Checkout"),
    "viewed-product": ("Viewed Product", "Product Viewed", "Product View"),
    "active-on-site": ("Active on Site", "Site Activity", "Page View"),
    "opened-email": ("Opened Email", "Email Opened"),
    "clicked-email": ("Clicked Email", "Email Clicked"),
    "added-to-cart": ("Added to Cart", "Add to Cart"),
    "reviewed-product": ("Reviewed Product", "Product Review", "Left Review", "Submitted Review"),
    "refunded-order": ("Refunded Order", "Order Refunded", "Refund Issued", "Cancelled Order"),
    "submitted-feedback": ("Submitted Feedback", "Feedback Submitted", "Survey Response", "NPS Response"),
}

# Lookback used for "all time" metric conditions; the platform requires a
# timeframe on every metric condition.
ALL_TIME_DAYS = 3650


@dataclass(frozen=True)
class MetricCondition:
    """Condition on how often (or how much) a profile triggered a metric."""

    metric: str
    operator: str
    value: Any
    days: Any = None
    """Lookback window in days, or None for all time."""
    measurement: str = "count"
    metric_filters: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class PropertyCondition:
    """Condition on a profile property."""

    property: str
    filter_type: str
    operator: str
    value: Any


@dataclass(frozen=True)
class PredictiveCondition:
    """Condition on a predictive analytics dimension."""

    dimension: str
    filter_type: str
    operator: str
    value: Any


@dataclass(frozen=True)
class ConsentCondition:
    """Condition on marketing consent for a channel."""

    can_receive_marketing: bool
    channel: str = "email"


Condition = MetricCondition | PropertyCondition | PredictiveCondition | ConsentCondition


@dataclass(frozen=True)
class CustomInput:
    """A tenant-supplied value a definition needs at request time."""

    key: str
    label: str
    default: str


@dataclass(frozen=True)
class SegmentDefinition:
    """A creatable segment.

    Attributes:
        id: Catalog identifier (stable, used in jobs).
        name: Display name template.
        category: Catalog grouping for listing.
        description: One-line explanation shown in the catalog.
        condition_groups: OR of AND-groups of conditions.
        requires_input: Custom input the definition reads, if any.
        unavailable: True when the platform API cannot create the segment.
    """

    id: str
    name: str
    category: str
    description: str
    condition_groups: tuple[tuple[Condition, ...], ...] = ()
    requires_input: CustomInput | None = None
    unavailable: bool = False

    @property
    def metric_keys(self) -> list[str]:
        keys: list[str] = []
        for group in self.condition_groups:
            for condition in group:
                if isinstance(condition, MetricCondition) and condition.metric not in keys:
                    keys.append(condition.metric)
        return keys


@dataclass(frozen=True)
class Bundle:
    """Named group of segment IDs selectable as one item."""

    id: str
    name: str
    description: str
    segment_ids: tuple[str, ...] = field(default_factory=tuple)


ENGAGEMENT = "Engagement & Activity"
DEMOGRAPHICS = "Demographics"
LIFECYCLE = "Customer Lifecycle & Value"
SHOPPING = "Shopping Behavior & Purchase History"
EXCLUSIONS = "Exclusion Segments"


def _m(metric: str, operator: str, value: Any, days: Any = None, **kwargs: Any) -> MetricCondition:
    return MetricCondition(metric=metric, operator=operator, value=value, days=days, **kwargs)


def _engaged(days: int) -> tuple[tuple[Condition, ...], ...]:
    return (
        (_m("opened-email", "greater-than", 0, days),),
        (_m("clicked-email", "greater-than", 0, days),),
    )


_DISCOUNT_USED = ({"property": "Discount Codes", "filter": {"type": "string", "operator": "is-not-empty"}},)
_DISCOUNT_UNUSED = ({"property": "Discount Codes", "filter": {"type": "string", "operator": "is-empty"}},)
_NO_MARKETING = ((ConsentCondition(can_receive_marketing=False),),)


SEGMENTS: tuple[SegmentDefinition, ...] = (
    # Engagement & Activity
    SegmentDefinition("engaged-30-days", "Engaged (Last 30 Days)", ENGAGEMENT,
                      "Opened or clicked an email in the last 30 days", _engaged(30)),
    SegmentDefinition("engaged-60-days", "Engaged (Last 60 Days)", ENGAGEMENT,
                      "Opened or clicked an email in the last 60 days", _engaged(60)),
    SegmentDefinition("engaged-90-days", "Engaged (Last 90 Days)", ENGAGEMENT,
                      "Opened or clicked an email in the last 90 days", _engaged(90)),
    SegmentDefinition("highly-engaged", "Highly Engaged", ENGAGEMENT,
                      "Opened 5+ emails in the last 30 days",
                      ((_m("opened-email", "greater-than", 4, 30),),)),
    SegmentDefinition("recent-clickers-90", "Recent Email Clickers (Last 90 Days)", ENGAGEMENT,
                      "Clicked an email in the last 90 days",
                      ((_m("clicked-email", "greater-than", 0, 90),),)),
    SegmentDefinition("engaged-non-buyers", "Engaged Non-Buyers", ENGAGEMENT,
                      "Engaged with email in 90 days but never purchased",
                      (
                          (_m("opened-email", "greater-than", 0, 90), _m("placed-order", "equals", 0)),
                          (_m("clicked-email", "greater-than", 0, 90), _m("placed-order", "equals", 0)),
                      )),
    SegmentDefinition("active-site-30", "Active on Site (Last 30 Days)", ENGAGEMENT,
                      "Visited the site in the last 30 days",
                      ((_m("active-on-site", "greater-than", 0, 30),),)),
    SegmentDefinition("unengaged-90", "Unengaged (90+ Days)", ENGAGEMENT,
                      "No email opens in 90 days",
                      ((_m("opened-email", "equals", 0, 90),),)),
    SegmentDefinition("unengaged-180", "Unengaged (180+ Days)", ENGAGEMENT,
                      "No email opens in 180 days",
                      ((_m("opened-email", "equals", 0, 180),),)),
    SegmentDefinition("email-openers-30", "Email Openers (30 Days)", ENGAGEMENT,
                      "Opened an email in the last 30 days",
                      ((_m("opened-email", "greater-than", 0, 30),),)),
    SegmentDefinition("email-openers-60", "Email Openers (60 Days)", ENGAGEMENT,
                      "Opened an email in the last 60 days",
                      ((_m("opened-email", "greater-than", 0, 60),),)),
    SegmentDefinition("email-clickers-30", "Email Clickers (30 Days)", ENGAGEMENT,
                      "Clicked an email in the last 30 days",
                      ((_m("clicked-email", "greater-than", 0, 30),),)),
    SegmentDefinition("email-clickers-60", "Email Clickers (60 Days)", ENGAGEMENT,
                      "Clicked an email in the last 60 days",
                      ((_m("clicked-email", "greater-than", 0, 60),),)),
    SegmentDefinition("site-visitors-30", "Site Visitors (30 Days)", ENGAGEMENT,
                      "Active on site in the last 30 days",
                      ((_m("active-on-site", "greater-than", 0, 30),),)),
    # Demographics
    SegmentDefinition("gender-male", "Likely Male", DEMOGRAPHICS, "Predicted gender is male",
                      ((PredictiveCondition("predicted_gender", "string", "equals", "likely_male"),),)),
    SegmentDefinition("gender-female", "Likely Female", DEMOGRAPHICS, "Predicted gender is female",
                      ((PredictiveCondition("predicted_gender", "string", "equals", "likely_female"),),)),
    SegmentDefinition("gender-uncertain", "Gender Uncertain", DEMOGRAPHICS, "Predicted gender is unknown",
                      ((PredictiveCondition("predicted_gender", "string", "equals", "uncertain"),),)),
    SegmentDefinition("location-country", "{input} Customers", DEMOGRAPHICS,
                      "Profiles located in a chosen country",
                      ((PropertyCondition("location['country']", "string", "equals", "{input}"),),),
                      requires_input=CustomInput("location-country", "Country Name", "United States")),
    SegmentDefinition("location-proximity", "Location - Proximity Radius", DEMOGRAPHICS,
                      "Within a radius of a location; requires coordinates set up in the platform UI",
                      unavailable=True),
    SegmentDefinition("birthday-month", "Birthday This Month", DEMOGRAPHICS,
                      "Birthday in the current month; the API has no month operator",
                      unavailable=True),
    SegmentDefinition("age-18-24", "Age 18-24", DEMOGRAPHICS, "Profiles aged 18 to 24",
                      ((PropertyCondition("properties['age']", "numeric", "greater-than-or-equal", 18),
                        PropertyCondition("properties['age']", "numeric", "less-than-or-equal", 24)),)),
    SegmentDefinition("age-25-40", "Age 25-40", DEMOGRAPHICS, "Profiles aged 25 to 40",
                      ((PropertyCondition("properties['age']", "numeric", "greater-than-or-equal", 25),
                        PropertyCondition("properties['age']", "numeric", "less-than-or-equal", 40)),)),
    # Customer Lifecycle & Value
    SegmentDefinition("new-subscribers", "New Subscribers", LIFECYCLE, "Never purchased",
                      ((_m("placed-order", "equals", 0),),)),
    SegmentDefinition("recent-first-time", "Recent First-Time Customers", LIFECYCLE,
                      "Exactly one order, placed within the new-customer window",
                      ((_m("placed-order", "equals", 1),
                        _m("placed-order", "greater-than", 0, "{new_customer_days}")),)),
    SegmentDefinition("repeat-customers", "Repeat Customers", LIFECYCLE, "Two or more orders",
                      ((_m("placed-order", "greater-than", 1),),)),
    SegmentDefinition("one-time-buyers", "One-Time Customers", LIFECYCLE, "Exactly one order",
                      ((_m("placed-order", "equals", 1),),)),
    SegmentDefinition("active-customers", "Active Customers", LIFECYCLE, "Purchased in the last 90 days",
                      ((_m("placed-order", "greater-than", 0, 90),),)),
    SegmentDefinition("lapsed-customers", "Lapsed Customers", LIFECYCLE,
                      "Purchased before but not within the lapsed window",
                      ((_m("placed-order", "greater-than", 0),
                        _m("placed-order", "equals", 0, "{lapsed_days}")),)),
    SegmentDefinition("churned-customers", "Churned Customers", LIFECYCLE,
                      "Purchased before but not within the churned window",
                      ((_m("placed-order", "greater-than", 0),
                        _m("placed-order", "equals", 0, "{churned_days}")),)),
    SegmentDefinition("vip-customers", "VIP Customers", LIFECYCLE, "Five or more orders",
                      ((_m("placed-order", "greater-than", 4),),)),
    SegmentDefinition("big-spenders", "Big Spenders ({currency_symbol}{vip_threshold}+)", LIFECYCLE,
                      "Historic lifetime value above the VIP threshold",
                      ((PropertyCondition("Historic Customer Lifetime Value", "numeric",
                                          "greater-than", "{vip_threshold}"),),)),
    SegmentDefinition("bargain-shoppers", "Bargain Shoppers (Under {currency_symbol}{aov})", LIFECYCLE,
                      "Historic lifetime value below the average order value",
                      ((PropertyCondition("Historic Customer Lifetime Value", "numeric",
                                          "less-than", "{aov}"),),)),
    SegmentDefinition("high-churn-risk", "High Churn Risk", LIFECYCLE,
                      "Predicted churn risk is high; needs predictive analytics",
                      unavailable=True),
    SegmentDefinition("likely-purchase-soon", "Likely to Purchase Soon", LIFECYCLE,
                      "Expected next order within 14 days; needs predictive analytics",
                      unavailable=True),
    SegmentDefinition("predicted-vips", "Predicted VIPs", LIFECYCLE,
                      "Predicted lifetime value above the VIP threshold; needs predictive analytics",
                      unavailable=True),
    SegmentDefinition("high-aov", "High AOV Customers ({currency_symbol}{high_value_threshold}+)", LIFECYCLE,
                      "Average order value above the high-value threshold",
                      ((PropertyCondition("Average Order Value", "numeric",
                                          "greater-than", "{high_value_threshold}"),),)),
    SegmentDefinition("low-aov", "Low AOV Customers (Under {currency_symbol}{aov})", LIFECYCLE,
                      "Average order value below the account average",
                      ((PropertyCondition("Average Order Value", "numeric", "less-than", "{aov}"),),)),
    # Shopping Behavior & Purchase History
    SegmentDefinition("all-customers", "All Customers", SHOPPING, "At least one order",
                      ((_m("placed-order", "greater-than", 0),),)),
    SegmentDefinition("never-purchased", "Never Purchased (Prospects)", SHOPPING, "No orders",
                      ((_m("placed-order", "equals", 0),),)),
    SegmentDefinition("recent-purchasers-30", "Recent Purchasers (30 Days)", SHOPPING,
                      "Ordered in the last 30 days",
                      ((_m("placed-order", "greater-than", 0, 30),),)),
    SegmentDefinition("abandoned-cart", "Abandoned Cart", SHOPPING,
                      "Added to cart in 30 days without ordering",
                      ((_m("added-to-cart", "greater-than", 0, 30), _m("placed-order", "equals", 0, 30)),)),
    SegmentDefinition("abandoned-cart-high-value",
                      "Abandoned Cart - High Value ({currency_symbol}{high_value_threshold}+)", SHOPPING,
                      "High-value carts abandoned in the last 30 days",
                      ((_m("added-to-cart", "greater-than-or-equal", "{high_value_threshold}", 30,
                           measurement="sum"),
                        _m("placed-order", "equals", 0, 30)),)),
    SegmentDefinition("abandoned-checkout", "Abandoned Checkout", SHOPPING,
                      "Started checkout in 30 days without ordering",
                      ((_m("started-checkout", "greater-than", 0, 30), _m("placed-order", "equals", 0, 30)),)),
    SegmentDefinition("browse-abandonment", "Browse Abandonment", SHOPPING,
                      "Viewed products without adding to cart or ordering",
                      ((_m("viewed-product", "greater-than", 0, 30), _m("added-to-cart", "equals", 0, 30),
                        _m("placed-order", "equals", 0, 30)),)),
    SegmentDefinition("category-interest", "Product Browsers (2+ Views)", SHOPPING,
                      "Viewed two or more products in 30 days",
                      ((_m("viewed-product", "greater-than", 1, 30),),)),
    SegmentDefinition("product-interest", "Repeat Product Viewers (3+ Views)", SHOPPING,
                      "Viewed three or more products in 30 days",
                      ((_m("viewed-product", "greater-than", 2, 30),),)),
    SegmentDefinition("cross-sell", "Cross-Sell Opportunities", SHOPPING,
                      "Needs product catalog category data", unavailable=True),
    SegmentDefinition("frequent-visitors", "Frequent Site Visitors", SHOPPING,
                      "Ten or more site sessions in 30 days",
                      ((_m("active-on-site", "greater-than", 9, 30),),)),
    SegmentDefinition("coupon-users", "Coupon Users", SHOPPING, "Ordered with a discount code",
                      ((_m("placed-order", "greater-than", 0, metric_filters=_DISCOUNT_USED),),)),
    SegmentDefinition("full-price-buyers", "Full-Price Buyers", SHOPPING, "Ordered without a discount code",
                      ((_m("placed-order", "greater-than", 0, metric_filters=_DISCOUNT_UNUSED),),)),
    SegmentDefinition("product-reviewers", "Product Reviewers", SHOPPING, "Left at least one review",
                      ((_m("reviewed-product", "greater-than", 0),),)),
    SegmentDefinition("non-reviewers", "Non-Reviewers", SHOPPING, "Customers who never reviewed",
                      ((_m("placed-order", "greater-than", 0), _m("reviewed-product", "equals", 0)),)),
    # Exclusion Segments
    SegmentDefinition("unsubscribed", "Not Receiving Marketing", EXCLUSIONS,
                      "Cannot receive email marketing", _NO_MARKETING),
    SegmentDefinition("bounced-emails", "Never Opened Any Email", EXCLUSIONS, "No opens ever",
                      ((_m("opened-email", "equals", 0),),)),
    SegmentDefinition("not-opted-in", "Not Opted In (Email)", EXCLUSIONS,
                      "Has not opted in to email", _NO_MARKETING),
    SegmentDefinition("recent-purchasers-exclude", "Recent Purchasers Exclusion (14 Days)", EXCLUSIONS,
                      "Ordered in the last 14 days",
                      ((_m("placed-order", "greater-than", 0, 14),),)),
    SegmentDefinition("refunded-customers", "Refunded Customers (30 Days)", EXCLUSIONS,
                      "Refunded in the last 30 days",
                      ((_m("refunded-order", "greater-than", 0, 30),),)),
    SegmentDefinition("negative-feedback", "Negative Feedback", EXCLUSIONS,
                      "Submitted feedback rated below 3",
                      ((_m("submitted-feedback", "greater-than", 0, metric_filters=(
                          {"property": "rating", "filter": {"type": "numeric", "operator": "less-than", "value": 3}},
                      )),),)),
    SegmentDefinition("unengaged-exclusion", "Unengaged Exclusion (180+ Days)", EXCLUSIONS,
                      "No opens or clicks in 180 days",
                      ((_m("opened-email", "equals", 0, 180), _m("clicked-email", "equals", 0, 180)),)),
    SegmentDefinition("sunset-segment", "Sunset Segment", EXCLUSIONS,
                      "Fewer than three opens in 180 days",
                      ((_m("opened-email", "greater-than", 0, 180), _m("opened-email", "less-than", 3, 180)),)),
    SegmentDefinition("high-churn-risk-exclude", "High Churn Risk Exclusion", EXCLUSIONS,
                      "Predicted churn risk is high; needs predictive analytics", unavailable=True),
    SegmentDefinition("received-5-opened-0", "Never Opened (All Time)", EXCLUSIONS, "No opens ever",
                      ((_m("opened-email", "equals", 0),),)),
    SegmentDefinition("received-3-in-3-days", "3+ Opens in 3 Days (Highly Active)", EXCLUSIONS,
                      "Three or more opens in three days",
                      ((_m("opened-email", "greater-than", 2, 3),),)),
    SegmentDefinition("marked-spam", "Unengaged 90+ Days (Spam Risk)", EXCLUSIONS,
                      "No opens in 90 days",
                      ((_m("opened-email", "equals", 0, 90),),)),
)


BUNDLES: tuple[Bundle, ...] = (
    Bundle("core-essentials", "Core Essentials", "Essential segments every brand needs", (
        "vip-customers", "repeat-customers", "one-time-buyers", "engaged-non-buyers",
        "abandoned-cart", "lapsed-customers",
    )),
    Bundle("engagement-maximizer", "Engagement Maximizer", "All engagement and activity tracking segments", (
        "engaged-30-days", "engaged-60-days", "engaged-90-days", "highly-engaged", "recent-clickers-90",
        "engaged-non-buyers", "active-site-30", "unengaged-90", "unengaged-180", "email-openers-30",
        "email-openers-60", "email-clickers-30", "email-clickers-60", "site-visitors-30",
    )),
    Bundle("lifecycle-manager", "Lifecycle Manager", "Complete customer lifecycle tracking", (
        "new-subscribers", "recent-first-time", "repeat-customers", "one-time-buyers", "active-customers",
        "lapsed-customers", "churned-customers", "vip-customers", "big-spenders", "bargain-shoppers",
        "high-aov", "low-aov",
    )),
    Bundle("shopping-behavior", "Shopping Behavior", "Track shopping patterns and opportunities", (
        "browse-abandonment", "category-interest", "product-interest", "frequent-visitors",
        "coupon-users", "full-price-buyers",
    )),
    Bundle("smart-exclusions", "Smart Exclusions", "Suppression list for deliverability", (
        "unsubscribed", "bounced-emails", "not-opted-in", "recent-purchasers-exclude", "refunded-customers",
        "unengaged-exclusion", "sunset-segment", "received-5-opened-0", "received-3-in-3-days", "marked-spam",
    )),
)
