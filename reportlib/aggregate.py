"""
Cross-record rollups for the license report.

Every function here works on finished records or fetched SKU counters, so
the enrichment pass stays free of shared counters.
"""
import logging
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from .constants import NO_COUNTRY, NO_DEPARTMENT, UNKNOWN
from .licensing import to_cents
from .models import (
    CostBucket,
    LicenseSummary,
    PricingTable,
    SkuUsageRecord,
    SubscribedSku,
    UserReportRecord,
)
from .reference import ReferenceTables

logger = logging.getLogger(__name__)


def purchased_units(consumed: int, enabled: int) -> int:
    """Enabled units, floored at consumed units (subscriptions can run over)."""
    return consumed if enabled < consumed else enabled


def build_sku_usage(
    skus: Iterable[SubscribedSku],
    references: ReferenceTables,
    pricing: Optional[PricingTable] = None,
) -> List[SkuUsageRecord]:
    """
    Summarize tenant SKUs that have at least one consumed unit.

    Annual cost prices the purchased (committed) units, not the consumed
    ones. With pricing the list is sorted by annual cost, otherwise by
    display name, both descending.
    """
    usage: List[SkuUsageRecord] = []

    for sku in skus:
        if not sku.consumed_units:
            continue

        purchased = purchased_units(sku.consumed_units, sku.enabled_units)
        display_name = references.sku_name(sku.sku_id) or sku.sku_part_number or sku.sku_id

        cost = None
        if pricing:
            price = pricing.monthly_price(sku.sku_id)
            if price is None:
                logger.warning(f"No price found for SKU {display_name} - counted as 0")
                cost = Decimal("0.00")
            else:
                cost = (Decimal(to_cents(price) * 12 * purchased) / 100).quantize(Decimal("0.01"))

        usage.append(SkuUsageRecord(
            sku_id=sku.sku_id,
            display_name=display_name,
            consumed_units=sku.consumed_units,
            purchased_units=purchased,
            annual_cost=cost,
        ))

    if pricing:
        usage.sort(key=lambda r: r.annual_cost or Decimal(0), reverse=True)
    else:
        usage.sort(key=lambda r: r.display_name.lower(), reverse=True)

    return usage


def rollup_costs(
    records: Iterable[UserReportRecord],
    key: Callable[[UserReportRecord], str],
    empty_label: str,
    buckets: Optional[Iterable[str]] = None,
) -> List[CostBucket]:
    """
    Count accounts and sum annual cost per distinct key value.

    Grouping is exact match on the trimmed value; blank values land in the
    ``empty_label`` bucket. Names passed in ``buckets`` are always reported,
    even when no account matches them.

    Returns:
        Buckets sorted by total cost descending, then name.
    """
    rollup: Dict[str, CostBucket] = {}
    for name in buckets or ():
        rollup.setdefault(name, CostBucket(name=name))

    for record in records:
        name = (key(record) or "").strip() or empty_label
        bucket = rollup.setdefault(name, CostBucket(name=name))
        bucket.account_count += 1
        if record.annual_cost is not None:
            bucket.total_cost += record.annual_cost

    return sorted(rollup.values(), key=lambda b: (-b.total_cost, b.name.lower()))


def rollup_by_department(records: Iterable[UserReportRecord], buckets: Optional[Iterable[str]] = None) -> List[CostBucket]:
    return rollup_costs(records, lambda r: r.department, NO_DEPARTMENT, buckets)


def rollup_by_country(records: Iterable[UserReportRecord], buckets: Optional[Iterable[str]] = None) -> List[CostBucket]:
    return rollup_costs(records, lambda r: r.country, NO_COUNTRY, buckets)


def summarize_licenses(records: Iterable[UserReportRecord], with_cost: bool = False) -> LicenseSummary:
    """Fold the run-wide counters out of the finished user records."""
    summary = LicenseSummary(total_cost=Decimal("0.00") if with_cost else None)

    for record in records:
        summary.total_accounts += 1
        if record.has_licenses:
            summary.licensed_accounts += 1
        if record.is_stale:
            summary.stale_accounts += 1
        if record.days_since_sign_in == UNKNOWN:
            summary.unknown_sign_in += 1
        if record.duplicate_skus:
            summary.accounts_with_duplicates += 1
            summary.duplicate_instances += len(record.duplicate_skus)
        summary.group_errors += record.group_error_count
        summary.direct_errors += record.direct_error_count
        if with_cost and record.annual_cost is not None:
            summary.total_cost += record.annual_cost

    return summary
