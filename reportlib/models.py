"""
Data models for the M365 admin reports.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from .constants import (
    DEFAULT_CURRENCY,
    NOT_APPLICABLE,
    STATE_ACTIVE,
    UNKNOWN,
)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so they compare with the run timestamp."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: Optional[datetime]) -> str:
    """Format a timestamp for report cells, blank when absent."""
    if value is None:
        return ""
    return value.strftime('%Y-%m-%d %H:%M:%S')


def format_money(value: Optional[Decimal]) -> str:
    """Format a currency amount with two decimals."""
    if value is None:
        return NOT_APPLICABLE
    return f"{value:.2f}"


# =============================================================================
# Fetched Inputs
# =============================================================================

@dataclass
class LicenseAssignment:
    """
    One SKU granted to one user.

    A user may hold the same SKU through several assignments at once,
    which is reported as a duplicate rather than treated as an error.
    """
    sku_id: str
    source_group_id: Optional[str] = None  # only set for group-based licensing
    state: str = STATE_ACTIVE
    error: Optional[str] = None  # only set when state is error
    last_updated: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state == STATE_ACTIVE


@dataclass
class AssignedLicense:
    """A SKU in the user's effective license list with its disabled plans."""
    sku_id: str
    disabled_plans: List[str] = field(default_factory=list)


@dataclass
class DirectoryUser:
    """Member user as returned by the directory, before enrichment."""
    user_id: str
    display_name: str
    user_principal_name: str
    country: str = ""
    department: str = ""
    job_title: str = ""
    created: Optional[datetime] = None
    last_sign_in: Optional[datetime] = None
    last_non_interactive_sign_in: Optional[datetime] = None
    assigned_licenses: List[AssignedLicense] = field(default_factory=list)
    assignment_states: List[LicenseAssignment] = field(default_factory=list)


@dataclass
class SubscribedSku:
    """Tenant-wide subscription counters for one SKU."""
    sku_id: str
    sku_part_number: str
    consumed_units: int = 0
    enabled_units: int = 0


@dataclass
class FolderActivity:
    """Item count and newest item timestamp for a mailbox folder or channel."""
    item_count: int = 0
    newest_item: Optional[datetime] = None


@dataclass
class GroupSnapshot:
    """Activity signals for one Microsoft 365 group, as fetched."""
    group_id: str
    display_name: str
    description: str = ""
    owners: List[str] = field(default_factory=list)
    member_count: int = 0
    guest_count: int = 0
    created: Optional[datetime] = None
    teams_enabled: bool = False
    inbox: Optional[FolderActivity] = None
    teams_chat: Optional[FolderActivity] = None
    site_url: Optional[str] = None
    last_file_activity: Optional[datetime] = None
    storage_bytes: int = 0
    failed_lookups: Set[str] = field(default_factory=set)


# =============================================================================
# Reference Data
# =============================================================================

@dataclass
class PricingTable:
    """Monthly unit price per SKU and the single currency of the run."""
    monthly_prices: Dict[str, Decimal] = field(default_factory=dict)
    currency: str = DEFAULT_CURRENCY

    def monthly_price(self, sku_id: str) -> Optional[Decimal]:
        return self.monthly_prices.get(sku_id.lower())

    def __bool__(self) -> bool:
        return bool(self.monthly_prices)


# =============================================================================
# Report Records
# =============================================================================

@dataclass(frozen=True)
class UserReportRecord:
    """One row of the license report."""
    display_name: str
    user_principal_name: str
    country: str
    department: str
    job_title: str
    direct_licenses: str
    disabled_plans: str
    group_licenses: str
    annual_cost: Optional[Decimal]
    last_sign_in: str
    days_since_sign_in: Any  # int, or the literal "Unknown"
    account_created: str
    status: str
    duplicate_warning: str
    last_license_change: str = ""
    direct_errors: str = ""
    duplicate_skus: Tuple[str, ...] = ()
    group_error_count: int = 0
    direct_error_count: int = 0
    has_licenses: bool = False
    is_stale: bool = False

    def to_row(self, include_cost: bool = True) -> Dict[str, str]:
        """Convert to an ordered column -> cell mapping for CSV and HTML."""
        row = {
            "User": self.display_name,
            "UPN": self.user_principal_name,
            "Country": self.country,
            "Department": self.department,
            "Title": self.job_title,
            "Direct assigned licenses": self.direct_licenses,
            "Disabled Plans": self.disabled_plans,
            "Group based licenses": self.group_licenses,
            "Annual License Costs": format_money(self.annual_cost),
            "Last Signin": self.last_sign_in,
            "Days since last signin": str(self.days_since_sign_in),
            "Account created": self.account_created,
            "Status": self.status,
            "Duplicates detected": self.duplicate_warning,
            "Last license change": self.last_license_change,
            "Direct assignment errors": self.direct_errors,
        }
        if not include_cost:
            del row["Annual License Costs"]
        return row


@dataclass(frozen=True)
class SkuUsageRecord:
    """One row of the SKU summary."""
    sku_id: str
    display_name: str
    consumed_units: int
    purchased_units: int
    annual_cost: Optional[Decimal] = None

    def to_row(self) -> Dict[str, str]:
        return {
            "SKU": self.sku_id,
            "Product": self.display_name,
            "Consumed units": str(self.consumed_units),
            "Purchased units": str(self.purchased_units),
            "Annual cost": format_money(self.annual_cost),
        }


@dataclass(frozen=True)
class GroupReportRecord:
    """One row of the groups/teams activity report."""
    name: str
    manager: str
    member_count: Any  # int, or "Unknown" when the members lookup failed
    guest_count: Any
    description: str
    mailbox_status: str
    teams_enabled: bool
    last_chat: str
    chat_count: Any
    last_conversation: str
    conversation_count: Any
    spo_activity: str
    spo_storage_gb: Optional[float]  # None when the library lookup failed
    spo_status: str
    created: str
    age_days: Any  # int, or "Unknown" when no creation date
    warning_count: int
    status: str

    def to_row(self) -> Dict[str, str]:
        return {
            "Name": self.name,
            "Manager": self.manager,
            "Members": str(self.member_count),
            "External Guests": str(self.guest_count),
            "Description": self.description,
            "MailboxStatus": self.mailbox_status,
            "Team enabled": "True" if self.teams_enabled else "False",
            "Last Chat": self.last_chat,
            "Number Chats": str(self.chat_count),
            "Last Conversation": self.last_conversation,
            "Number Conversations": str(self.conversation_count),
            "SPO Activity": self.spo_activity,
            "SPO Storage (GB)": UNKNOWN if self.spo_storage_gb is None else f"{self.spo_storage_gb:.2f}",
            "SPO Status": self.spo_status,
            "Date Created": self.created,
            "Days Old": str(self.age_days),
            "NumberWarnings": str(self.warning_count),
            "Status": self.status,
        }


# =============================================================================
# Aggregates
# =============================================================================

@dataclass
class CostBucket:
    """Accounts and annual cost for one department or country."""
    name: str
    account_count: int = 0
    total_cost: Decimal = Decimal("0.00")

    @property
    def average_cost(self) -> Decimal:
        if not self.account_count:
            return Decimal("0.00")
        return (self.total_cost / self.account_count).quantize(Decimal("0.01"))

    def to_row(self) -> Dict[str, str]:
        return {
            "Name": self.name,
            "Accounts": str(self.account_count),
            "Total annual cost": format_money(self.total_cost),
            "Average annual cost": format_money(self.average_cost),
        }


@dataclass
class LicenseSummary:
    """Run-wide counters folded from completed user records."""
    total_accounts: int = 0
    licensed_accounts: int = 0
    stale_accounts: int = 0
    unknown_sign_in: int = 0
    accounts_with_duplicates: int = 0
    duplicate_instances: int = 0
    group_errors: int = 0
    direct_errors: int = 0
    total_cost: Optional[Decimal] = None

    @property
    def stale_percentage(self) -> float:
        if not self.total_accounts:
            return 0.0
        return round(self.stale_accounts / self.total_accounts * 100, 1)

    @property
    def average_cost(self) -> Optional[Decimal]:
        if self.total_cost is None:
            return None
        if not self.licensed_accounts:
            return Decimal("0.00")
        return (self.total_cost / self.licensed_accounts).quantize(Decimal("0.01"))

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['stale_percentage'] = self.stale_percentage
        data['average_cost'] = self.average_cost
        return data


@dataclass
class GroupSummary:
    """Run-wide counters folded from completed group records."""
    total_groups: int = 0
    teams_enabled: int = 0
    without_owners: int = 0
    with_guests: int = 0
    passed: int = 0
    warned: int = 0
    failed: int = 0

    def percentage(self, count: int) -> float:
        if not self.total_groups:
            return 0.0
        return round(count / self.total_groups * 100, 1)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)
