"""
M365 admin reports shared library.
"""
# Import constants module for easy access
from . import constants
from .aggregate import (
    build_sku_usage,
    purchased_units,
    rollup_by_country,
    rollup_by_department,
    rollup_costs,
    summarize_licenses,
)
from .groups import classify_group, summarize_groups
from .licensing import (
    annual_cost,
    collect_source_group_ids,
    detect_duplicates,
    enrich_user,
    partition_assignments,
    sign_in_recency,
)
from .models import (
    AssignedLicense,
    CostBucket,
    DirectoryUser,
    FolderActivity,
    GroupReportRecord,
    GroupSnapshot,
    GroupSummary,
    LicenseAssignment,
    LicenseSummary,
    PricingTable,
    SkuUsageRecord,
    SubscribedSku,
    UserReportRecord,
)
from .reference import ReferenceDataError, ReferenceTables, load_reference_tables
from .report import (
    ReportDocument,
    build_group_document,
    build_license_document,
    render_html,
    write_report,
)
from .utils import (
    AuthError,
    ProgressTracker,
    get_timestamp,
    setup_logging,
    write_csv,
    write_json,
)

__all__ = [
    'constants',
    # Models
    'AssignedLicense',
    'CostBucket',
    'DirectoryUser',
    'FolderActivity',
    'GroupReportRecord',
    'GroupSnapshot',
    'GroupSummary',
    'LicenseAssignment',
    'LicenseSummary',
    'PricingTable',
    'SkuUsageRecord',
    'SubscribedSku',
    'UserReportRecord',
    # Reference data
    'ReferenceDataError',
    'ReferenceTables',
    'load_reference_tables',
    # License report
    'annual_cost',
    'collect_source_group_ids',
    'detect_duplicates',
    'enrich_user',
    'partition_assignments',
    'sign_in_recency',
    'build_sku_usage',
    'purchased_units',
    'rollup_costs',
    'rollup_by_department',
    'rollup_by_country',
    'summarize_licenses',
    # Group report
    'classify_group',
    'summarize_groups',
    # Rendering
    'ReportDocument',
    'build_license_document',
    'build_group_document',
    'render_html',
    'write_report',
    # Utils
    'AuthError',
    'ProgressTracker',
    'get_timestamp',
    'setup_logging',
    'write_csv',
    'write_json',
]
