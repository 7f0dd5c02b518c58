"""
Constants for the M365 admin reports.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_GB = 1024 ** 3

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_CURRENCY = "EUR"
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_SKU_FILE = "./SkuDataComplete.csv"
DEFAULT_SERVICE_PLAN_FILE = "./ServicePlanDataComplete.csv"
DEFAULT_OUTPUT_DIR = "./m365_reports"

# Accounts without a sign-in for longer than this are flagged
DEFAULT_STALE_DAYS = 60

# Group inbox is stale when the newest item is older than this
DEFAULT_INBOX_STALE_DAYS = 365
# Fewer conversations than this counts as low mailbox usage
LOW_CONVERSATION_THRESHOLD = 20
# Trailing window for document library activity
DEFAULT_SPO_ACTIVITY_DAYS = 90

GRAPH_SCOPES = ['https://graph.microsoft.com/.default']
GRAPH_PAGE_SIZE = 999

# =============================================================================
# License Assignment Values
# =============================================================================

STATE_ACTIVE = "active"
STATE_ERROR = "error"

# =============================================================================
# Display Literals
# =============================================================================

UNKNOWN = "Unknown"
NOT_APPLICABLE = "N/A"
NO_OWNERS = "No owners"
NO_DEPARTMENT = "No department"
NO_COUNTRY = "No country"

STATUS_OK = "OK"
STATUS_UNKNOWN_SIGNIN = "Unknown last sign-in"
STATUS_UNUSED_TEMPLATE = "Account unused for {days} days - check!"

MAILBOX_NOT_USED = "Group Inbox Not Recently Used"
MAILBOX_LOW_USE = "Low number of conversations"
MAILBOX_NORMAL = "Normal"

SPO_NORMAL = "Normal"
SPO_NO_ACTIVITY = "No SPO activity detected in the last {days} days"
SPO_NEVER_CREATED = "Document library never created"
SPO_ACTIVITY_ACTIVE = "Document library in use"
SPO_ACTIVITY_NONE = "No recent file activity"
SPO_ACTIVITY_MISSING = "No document library"

GROUP_PASS = "Pass"
GROUP_WARNING = "Warning"
GROUP_FAIL = "Fail"

# Per-group lookups that can fail on their own; the affected cells read
# "Unknown" and never count as a warning
LOOKUP_OWNERS = "owners"
LOOKUP_MEMBERS = "members"
LOOKUP_INBOX = "inbox"
LOOKUP_LIBRARY = "document library"
LOOKUP_TEAMS_CHAT = "Teams chat"

# =============================================================================
# Report Columns
# =============================================================================

LICENSE_COLUMNS = [
    "User",
    "UPN",
    "Country",
    "Department",
    "Title",
    "Direct assigned licenses",
    "Disabled Plans",
    "Group based licenses",
    "Annual License Costs",
    "Last Signin",
    "Days since last signin",
    "Account created",
    "Status",
    "Duplicates detected",
    "Last license change",
    "Direct assignment errors",
]

# Dropped from the license report when no pricing data was loaded
COST_COLUMN = "Annual License Costs"

SKU_USAGE_COLUMNS = [
    "SKU",
    "Product",
    "Consumed units",
    "Purchased units",
    "Annual cost",
]

ROLLUP_COLUMNS = [
    "Name",
    "Accounts",
    "Total annual cost",
    "Average annual cost",
]

GROUP_COLUMNS = [
    "Name",
    "Manager",
    "Members",
    "External Guests",
    "Description",
    "MailboxStatus",
    "Team enabled",
    "Last Chat",
    "Number Chats",
    "Last Conversation",
    "Number Conversations",
    "SPO Activity",
    "SPO Storage (GB)",
    "SPO Status",
    "Date Created",
    "Days Old",
    "NumberWarnings",
    "Status",
]

# M365/Graph error codes that indicate auth/permission issues
M365_AUTH_ERROR_CODES = {
    'Authorization_RequestDenied',
    'InvalidAuthenticationToken',
    'Authentication_MissingOrMalformed',
    'AccessDenied',
}
