"""
Per-user license enrichment.

Joins a fetched directory user against the SKU / service plan reference
tables, the resolved group names, and the optional pricing table to build one
UserReportRecord. Cross-user counters are not kept here; they are folded from
the finished records in aggregate.py.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .constants import (
    DEFAULT_STALE_DAYS,
    NOT_APPLICABLE,
    STATE_ERROR,
    STATUS_OK,
    STATUS_UNKNOWN_SIGNIN,
    STATUS_UNUSED_TEMPLATE,
    UNKNOWN,
)
from .models import (
    DirectoryUser,
    LicenseAssignment,
    PricingTable,
    UserReportRecord,
    as_utc,
    format_timestamp,
)
from .reference import ReferenceTables

logger = logging.getLogger(__name__)


def partition_assignments(
    states: Iterable[LicenseAssignment],
) -> Tuple[List[LicenseAssignment], List[LicenseAssignment], List[LicenseAssignment], List[LicenseAssignment]]:
    """
    Split assignment states on (group sourced?) x (active or error?).

    Returns:
        Tuple of (direct_active, group_active, group_error, direct_error).
        States that are neither active nor error (e.g. processing) are dropped.
    """
    direct_active: List[LicenseAssignment] = []
    group_active: List[LicenseAssignment] = []
    group_error: List[LicenseAssignment] = []
    direct_error: List[LicenseAssignment] = []

    for state in states:
        if state.is_active:
            (group_active if state.source_group_id else direct_active).append(state)
        elif state.state == STATE_ERROR:
            (group_error if state.source_group_id else direct_error).append(state)

    return direct_active, group_active, group_error, direct_error


def detect_duplicates(
    direct_active: Iterable[LicenseAssignment],
    group_active: Iterable[LicenseAssignment],
) -> List[str]:
    """
    Find SKUs the user holds through more than one assignment path.

    Each (method, source group) pair counts as one path, so the same SKU
    from two different groups is a duplicate too.

    Returns:
        Duplicated SKU ids in first-seen order.
    """
    paths: "OrderedDict[str, Set[Optional[str]]]" = OrderedDict()
    first_id: Dict[str, str] = {}

    for assignment in list(direct_active) + list(group_active):
        key = assignment.sku_id.lower()
        first_id.setdefault(key, assignment.sku_id)
        paths.setdefault(key, set()).add(
            assignment.source_group_id.lower() if assignment.source_group_id else None
        )

    return [first_id[key] for key, sources in paths.items() if len(sources) > 1]


def format_duplicate_warning(duplicate_skus: List[str], references: ReferenceTables) -> str:
    if not duplicate_skus:
        return NOT_APPLICABLE
    names = ", ".join(references.sku_label(sku) for sku in duplicate_skus)
    return f"Duplicate licenses detected: {names}"


def sign_in_recency(
    last_sign_in: Optional[datetime],
    last_non_interactive: Optional[datetime],
    run_timestamp: datetime,
    stale_days: int = DEFAULT_STALE_DAYS,
):
    """
    Classify how recently an account signed in.

    The later of the interactive and non-interactive timestamps is compared
    with the run timestamp. Days are whole days, floored, and never negative.

    Returns:
        Tuple of (last sign-in cell, days since or "Unknown", status, is_stale)
    """
    present = [as_utc(ts) for ts in (last_sign_in, last_non_interactive) if ts is not None]
    if not present:
        return UNKNOWN, UNKNOWN, STATUS_UNKNOWN_SIGNIN, False

    compare_date = max(present)
    days = max((as_utc(run_timestamp) - compare_date).days, 0)

    if days > stale_days:
        return format_timestamp(compare_date), days, STATUS_UNUSED_TEMPLATE.format(days=days), True
    return format_timestamp(compare_date), days, STATUS_OK, False


def to_cents(amount: Decimal) -> int:
    """Convert a currency amount to whole cents."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def annual_cost(sku_ids: Iterable[str], pricing: PricingTable) -> Decimal:
    """
    Annual cost of a set of SKUs.

    Works in integer cents (monthly cents x 12) so sub-cent float drift
    never shows up in the totals. SKUs without a price count as 0.
    """
    total_cents = 0
    for sku_id in sku_ids:
        price = pricing.monthly_price(sku_id)
        if price is None:
            logger.warning(f"No price found for SKU {sku_id} - counted as 0")
            continue
        total_cents += to_cents(price) * 12
    return (Decimal(total_cents) / 100).quantize(Decimal("0.01"))


def collect_source_group_ids(users: Iterable[DirectoryUser]) -> List[str]:
    """Distinct group ids that license any of the given users, in first-seen order."""
    seen: "OrderedDict[str, None]" = OrderedDict()
    for user in users:
        for state in user.assignment_states:
            if state.source_group_id:
                seen.setdefault(state.source_group_id, None)
    return list(seen)


def _group_label(group_id: str, group_names: Mapping[str, str]) -> str:
    name = group_names.get(group_id)
    if name is None:
        logger.warning(f"Could not resolve group {group_id}, using raw id")
        return group_id
    return name


def enrich_user(
    user: DirectoryUser,
    references: ReferenceTables,
    run_timestamp: datetime,
    group_names: Optional[Mapping[str, str]] = None,
    pricing: Optional[PricingTable] = None,
    stale_days: int = DEFAULT_STALE_DAYS,
) -> UserReportRecord:
    """
    Build the license report record for one user.

    Args:
        user: Fetched directory user
        references: SKU and service plan name tables
        run_timestamp: Captured once per run so every record agrees
        group_names: Group id -> display name; unresolved ids show raw
        pricing: Monthly prices; cost is only computed when non-empty
        stale_days: Days without sign-in before the account is flagged

    Returns:
        Immutable UserReportRecord
    """
    group_names = group_names or {}
    direct_active, group_active, group_error, direct_error = partition_assignments(user.assignment_states)

    group_licenses = [
        f"{references.sku_label(a.sku_id)} assigned from {_group_label(a.source_group_id, group_names)}"
        for a in group_active
    ]
    for a in group_error:
        group_licenses.append(
            f"{references.sku_label(a.sku_id)} assigned from {_group_label(a.source_group_id, group_names)}"
            f" BUT ERROR {a.error or UNKNOWN}!"
        )

    direct_licenses = [references.sku_label(a.sku_id) for a in direct_active]
    direct_errors = [f"{references.sku_label(a.sku_id)} ERROR {a.error or UNKNOWN}!" for a in direct_error]

    disabled_plans = [
        references.plan_label(plan_id)
        for lic in user.assigned_licenses
        for plan_id in lic.disabled_plans
    ]

    updates = [as_utc(s.last_updated) for s in user.assignment_states if s.last_updated is not None]
    last_change = format_timestamp(max(updates)) if updates else ""

    last_sign_in, days_since, status, is_stale = sign_in_recency(
        user.last_sign_in, user.last_non_interactive_sign_in, run_timestamp, stale_days
    )

    duplicates = detect_duplicates(direct_active, group_active)

    cost = None
    if pricing:
        cost = annual_cost((lic.sku_id for lic in user.assigned_licenses), pricing)

    return UserReportRecord(
        display_name=user.display_name,
        user_principal_name=user.user_principal_name,
        country=user.country,
        department=user.department,
        job_title=user.job_title,
        direct_licenses=", ".join(direct_licenses),
        disabled_plans=", ".join(disabled_plans),
        group_licenses=", ".join(group_licenses),
        annual_cost=cost,
        last_sign_in=last_sign_in,
        days_since_sign_in=days_since,
        account_created=format_timestamp(user.created),
        status=status,
        duplicate_warning=format_duplicate_warning(duplicates, references),
        last_license_change=last_change,
        direct_errors=", ".join(direct_errors),
        duplicate_skus=tuple(duplicates),
        group_error_count=len(group_error),
        direct_error_count=len(direct_error),
        has_licenses=bool(user.assigned_licenses or user.assignment_states),
        is_stale=is_stale,
    )
