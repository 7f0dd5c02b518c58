"""
Tests for reportlib/licensing.py per-user enrichment.

Covers:
- Assignment partitioning (direct/group x active/error)
- Duplicate license detection
- Sign-in recency classification
- Integer-cent annual cost
- enrich_user record assembly and name fallbacks
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reportlib.licensing import (
    annual_cost,
    collect_source_group_ids,
    detect_duplicates,
    enrich_user,
    format_duplicate_warning,
    partition_assignments,
    sign_in_recency,
    to_cents,
)
from reportlib.models import (
    AssignedLicense,
    DirectoryUser,
    LicenseAssignment,
    PricingTable,
)
from reportlib.reference import ReferenceTables

RUN_TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

E3 = "05e9a617-0261-4cee-bb44-138d3ef5d965"
EMS = "efccb6f7-5641-4e0e-bd10-b4976e1bf68e"
VISIO = "c5928f49-12ba-48f7-ada3-0d743a3601d5"
EXCHANGE_PLAN = "efb87545-963c-4e0d-99df-69c6916d9eb0"
GROUP_A = "aaaaaaaa-1111-2222-3333-444444444444"
GROUP_B = "bbbbbbbb-1111-2222-3333-444444444444"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def references():
    """Reference tables with two known SKUs and one service plan."""
    return ReferenceTables(
        sku_names={E3: "Microsoft 365 E3", EMS: "Enterprise Mobility + Security E3"},
        plan_names={EXCHANGE_PLAN: "Exchange Online (Plan 2)"},
    )


def create_user(**overrides) -> DirectoryUser:
    """Create a DirectoryUser with sensible defaults."""
    values = dict(
        user_id="user-001",
        display_name="Jane Doe",
        user_principal_name="jane.doe@contoso.com",
        country="NL",
        department="Finance",
        job_title="Controller",
        created=datetime(2021, 3, 1, 8, 30, tzinfo=timezone.utc),
        last_sign_in=RUN_TS - timedelta(days=2),
    )
    values.update(overrides)
    return DirectoryUser(**values)


# =============================================================================
# partition_assignments Tests
# =============================================================================

class TestPartitionAssignments:
    """Tests for splitting assignment states."""

    def test_four_way_split(self):
        states = [
            LicenseAssignment(E3),
            LicenseAssignment(EMS, source_group_id=GROUP_A),
            LicenseAssignment(VISIO, source_group_id=GROUP_B, state="error", error="CountViolation"),
            LicenseAssignment(EMS, state="error", error="MutuallyExclusiveViolation"),
        ]

        direct_active, group_active, group_error, direct_error = partition_assignments(states)

        assert [a.sku_id for a in direct_active] == [E3]
        assert [a.sku_id for a in group_active] == [EMS]
        assert [a.sku_id for a in group_error] == [VISIO]
        assert [a.sku_id for a in direct_error] == [EMS]

    def test_other_states_dropped(self):
        states = [LicenseAssignment(E3, state="processing")]

        assert partition_assignments(states) == ([], [], [], [])


# =============================================================================
# detect_duplicates Tests
# =============================================================================

class TestDetectDuplicates:
    """Tests for duplicate license detection."""

    def test_direct_and_group_same_sku(self):
        direct = [LicenseAssignment(E3)]
        group = [LicenseAssignment(E3, source_group_id=GROUP_A)]

        assert detect_duplicates(direct, group) == [E3]

    def test_two_groups_same_sku(self):
        group = [
            LicenseAssignment(E3, source_group_id=GROUP_A),
            LicenseAssignment(E3, source_group_id=GROUP_B),
        ]

        assert detect_duplicates([], group) == [E3]

    def test_single_path_is_not_duplicate(self):
        direct = [LicenseAssignment(E3)]
        group = [LicenseAssignment(EMS, source_group_id=GROUP_A)]

        assert detect_duplicates(direct, group) == []

    def test_repeated_identical_path_is_not_duplicate(self):
        group = [
            LicenseAssignment(E3, source_group_id=GROUP_A),
            LicenseAssignment(E3, source_group_id=GROUP_A.upper()),
        ]

        assert detect_duplicates([], group) == []

    def test_sku_case_insensitive(self):
        direct = [LicenseAssignment(E3.upper())]
        group = [LicenseAssignment(E3, source_group_id=GROUP_A)]

        assert detect_duplicates(direct, group) == [E3.upper()]

    def test_warning_text(self, references):
        assert format_duplicate_warning([], references) == "N/A"
        assert format_duplicate_warning([E3], references) == "Duplicate licenses detected: Microsoft 365 E3"


# =============================================================================
# sign_in_recency Tests
# =============================================================================

class TestSignInRecency:
    """Tests for sign-in recency classification."""

    def test_no_sign_in_known(self):
        assert sign_in_recency(None, None, RUN_TS) == ("Unknown", "Unknown", "Unknown last sign-in", False)

    def test_recent_sign_in_is_ok(self):
        cell, days, status, stale = sign_in_recency(RUN_TS - timedelta(days=3), None, RUN_TS)

        assert cell == "2024-05-29 12:00:00"
        assert days == 3
        assert status == "OK"
        assert stale is False

    def test_sixty_days_is_not_stale(self):
        _, days, status, stale = sign_in_recency(RUN_TS - timedelta(days=60), None, RUN_TS)

        assert days == 60
        assert status == "OK"
        assert stale is False

    def test_over_sixty_days_is_stale(self):
        _, days, status, stale = sign_in_recency(RUN_TS - timedelta(days=61), None, RUN_TS)

        assert days == 61
        assert status == "Account unused for 61 days - check!"
        assert stale is True

    def test_later_of_interactive_and_non_interactive(self):
        interactive = RUN_TS - timedelta(days=200)
        background = RUN_TS - timedelta(days=5)

        _, days, status, _ = sign_in_recency(interactive, background, RUN_TS)

        assert days == 5
        assert status == "OK"

    def test_only_non_interactive(self):
        _, days, _, _ = sign_in_recency(None, RUN_TS - timedelta(days=10), RUN_TS)

        assert days == 10

    def test_partial_days_floor(self):
        _, days, _, _ = sign_in_recency(RUN_TS - timedelta(days=4, hours=23), None, RUN_TS)

        assert days == 4

    def test_future_timestamp_never_negative(self):
        _, days, status, _ = sign_in_recency(RUN_TS + timedelta(hours=5), None, RUN_TS)

        assert days == 0
        assert status == "OK"

    def test_naive_timestamp_treated_as_utc(self):
        naive = datetime(2024, 5, 1, 12, 0, 0)

        _, days, _, _ = sign_in_recency(naive, None, RUN_TS)

        assert days == 31

    def test_custom_threshold(self):
        _, _, status, stale = sign_in_recency(RUN_TS - timedelta(days=31), None, RUN_TS, stale_days=30)

        assert stale is True
        assert status == "Account unused for 31 days - check!"


# =============================================================================
# Cost Tests
# =============================================================================

class TestAnnualCost:
    """Tests for integer-cent annual cost."""

    def test_to_cents(self):
        assert to_cents(Decimal("16.40")) == 1640
        assert to_cents(Decimal("0.005")) == 1

    def test_single_sku(self):
        pricing = PricingTable({E3: Decimal("16.40")})

        assert annual_cost([E3], pricing) == Decimal("196.80")

    def test_unpriced_sku_counts_zero(self):
        pricing = PricingTable({E3: Decimal("16.40")})

        assert annual_cost([E3, VISIO], pricing) == Decimal("196.80")
        assert annual_cost([VISIO], pricing) == Decimal("0.00")

    def test_no_float_drift(self):
        pricing = PricingTable({E3: Decimal("0.10"), EMS: Decimal("0.20")})

        assert annual_cost([E3, EMS], pricing) == Decimal("3.60")

    def test_lookup_case_insensitive(self):
        pricing = PricingTable({E3: Decimal("10.00")})

        assert annual_cost([E3.upper()], pricing) == Decimal("120.00")


# =============================================================================
# enrich_user Tests
# =============================================================================

class TestEnrichUser:
    """Tests for building one user record."""

    def test_full_record(self, references):
        user = create_user(
            assigned_licenses=[
                AssignedLicense(E3, disabled_plans=[EXCHANGE_PLAN]),
                AssignedLicense(EMS),
            ],
            assignment_states=[
                LicenseAssignment(E3, source_group_id=GROUP_A,
                                  last_updated=datetime(2024, 1, 10, tzinfo=timezone.utc)),
                LicenseAssignment(EMS, last_updated=datetime(2024, 3, 5, 9, 15, tzinfo=timezone.utc)),
                LicenseAssignment(VISIO, source_group_id=GROUP_B, state="error", error="CountViolation"),
            ],
        )

        record = enrich_user(user, references, RUN_TS, group_names={GROUP_A: "License-E3"})

        assert record.display_name == "Jane Doe"
        assert record.direct_licenses == "Enterprise Mobility + Security E3"
        assert record.group_licenses == (
            "Microsoft 365 E3 assigned from License-E3, "
            f"{VISIO} assigned from {GROUP_B} BUT ERROR CountViolation!"
        )
        assert record.disabled_plans == "Exchange Online (Plan 2)"
        assert record.last_license_change == "2024-03-05 09:15:00"
        assert record.group_error_count == 1
        assert record.direct_error_count == 0
        assert record.duplicate_warning == "N/A"
        assert record.status == "OK"
        assert record.days_since_sign_in == 2
        assert record.account_created == "2021-03-01 08:30:00"
        assert record.annual_cost is None
        assert record.has_licenses is True

    def test_duplicate_recorded(self, references):
        user = create_user(
            assigned_licenses=[AssignedLicense(E3)],
            assignment_states=[
                LicenseAssignment(E3),
                LicenseAssignment(E3, source_group_id=GROUP_A),
            ],
        )

        record = enrich_user(user, references, RUN_TS, group_names={GROUP_A: "License-E3"})

        assert record.duplicate_skus == (E3,)
        assert record.duplicate_warning == "Duplicate licenses detected: Microsoft 365 E3"

    def test_direct_error_surfaced(self, references):
        user = create_user(
            assignment_states=[LicenseAssignment(EMS, state="error", error="DependencyViolation")],
        )

        record = enrich_user(user, references, RUN_TS)

        assert record.direct_errors == "Enterprise Mobility + Security E3 ERROR DependencyViolation!"
        assert record.direct_error_count == 1
        assert record.direct_licenses == ""

    def test_unknown_ids_fall_back_to_raw(self, references):
        unknown_plan = "99999999-0000-0000-0000-000000000000"
        user = create_user(
            assigned_licenses=[AssignedLicense(VISIO, disabled_plans=[unknown_plan])],
            assignment_states=[LicenseAssignment(VISIO)],
        )

        record = enrich_user(user, references, RUN_TS)

        assert record.direct_licenses == VISIO
        assert record.disabled_plans == unknown_plan

    def test_cost_only_with_pricing(self, references):
        user = create_user(
            assigned_licenses=[AssignedLicense(E3), AssignedLicense(EMS)],
            assignment_states=[LicenseAssignment(E3), LicenseAssignment(EMS)],
        )
        pricing = PricingTable({E3: Decimal("16.40"), EMS: Decimal("9.00")})

        without = enrich_user(user, references, RUN_TS)
        empty = enrich_user(user, references, RUN_TS, pricing=PricingTable())
        priced = enrich_user(user, references, RUN_TS, pricing=pricing)

        assert without.annual_cost is None
        assert empty.annual_cost is None
        assert priced.annual_cost == Decimal("304.80")
        assert priced.to_row()["Annual License Costs"] == "304.80"
        assert "Annual License Costs" not in without.to_row(include_cost=False)

    def test_unlicensed_never_signed_in(self, references):
        user = create_user(last_sign_in=None, created=None)

        record = enrich_user(user, references, RUN_TS)

        assert record.has_licenses is False
        assert record.days_since_sign_in == "Unknown"
        assert record.status == "Unknown last sign-in"
        assert record.account_created == ""
        assert record.last_license_change == ""

    def test_stale_account(self, references):
        user = create_user(last_sign_in=RUN_TS - timedelta(days=90))

        record = enrich_user(user, references, RUN_TS)

        assert record.is_stale is True
        assert record.to_row()["Days since last signin"] == "90"


class TestCollectSourceGroupIds:
    """Tests for distinct licensing group discovery."""

    def test_distinct_in_first_seen_order(self):
        users = [
            create_user(assignment_states=[
                LicenseAssignment(E3, source_group_id=GROUP_B),
                LicenseAssignment(EMS),
            ]),
            create_user(assignment_states=[
                LicenseAssignment(E3, source_group_id=GROUP_A),
                LicenseAssignment(EMS, source_group_id=GROUP_B),
            ]),
        ]

        assert collect_source_group_ids(users) == [GROUP_B, GROUP_A]
