#!/usr/bin/env python3
"""
M365 Reports - License Report
Per-user license report for a Microsoft 365 tenant: who holds which SKU and
how it was assigned, duplicate and failed assignments, sign-in recency, and
(when the SKU table carries prices) annual cost with department and country
rollups.

Requirements:
- Azure AD App Registration with following API permissions (Application type):
  - User.Read.All (users and license assignments)
  - AuditLog.Read.All (sign-in activity)
  - Organization.Read.All (tenant name, subscribed SKUs)
  - Group.Read.All (names of licensing groups)
- SkuDataComplete.csv and ServicePlanDataComplete.csv reference tables

Usage:
    # Set environment variables (client secret MUST be env var for security)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    # Run report
    python license_report.py

    # Custom reference tables and currency
    python license_report.py --sku-file ./skus.csv --currency USD
"""
import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Dict, List, NoReturn, Optional

# Add repo root to path so the script runs from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from reportlib.aggregate import (
    build_sku_usage,
    rollup_by_country,
    rollup_by_department,
    summarize_licenses,
)
from reportlib.config import (
    ConfigError,
    generate_sample_config,
    get_client_secret,
    get_nested,
    load_config,
)
from reportlib.graph import (
    fetch_member_users,
    fetch_organization_name,
    fetch_subscribed_skus,
    get_graph_client,
    resolve_group_names,
)
from reportlib.licensing import collect_source_group_ids, enrich_user
from reportlib.models import DirectoryUser, PricingTable, SubscribedSku, UserReportRecord
from reportlib.reference import ReferenceDataError, ReferenceTables, load_reference_tables
from reportlib.report import build_license_document, write_report
from reportlib.utils import AuthError, ProgressTracker, get_timestamp, setup_logging

logger = logging.getLogger(__name__)


class LicenseData:
    """Everything fetched from the tenant for one license report run."""

    def __init__(self, tenant_name: str, users: List[DirectoryUser],
                 skus: List[SubscribedSku], group_names: Dict[str, str]):
        self.tenant_name = tenant_name
        self.users = users
        self.skus = skus
        self.group_names = group_names


async def collect_license_data(client) -> LicenseData:
    """
    Fetch users, subscriptions and licensing group names.

    Group names are resolved once per distinct group before enrichment.

    Raises:
        AuthError: If the session is missing or lacks permissions
    """
    tenant_name = await fetch_organization_name(client)
    users = await fetch_member_users(client)
    skus = await fetch_subscribed_skus(client)

    group_ids = collect_source_group_ids(users)
    logger.info(f"Resolving {len(group_ids)} licensing groups")
    group_names = await resolve_group_names(client, group_ids)

    return LicenseData(tenant_name, users, skus, group_names)


def enrich_users(
    users: List[DirectoryUser],
    references: ReferenceTables,
    run_timestamp: datetime,
    group_names: Dict[str, str],
    pricing: Optional[PricingTable],
    stale_days: int,
) -> List[UserReportRecord]:
    """Enrich every user with progress display, keeping input order."""
    records: List[UserReportRecord] = []
    with ProgressTracker("License", total=len(users)) as tracker:
        for user in users:
            tracker.update_task(user.display_name or user.user_principal_name)
            record = enrich_user(user, references, run_timestamp, group_names, pricing, stale_days)
            records.append(record)
            tracker.advance(flagged=record.is_stale or bool(record.duplicate_skus))
    return records


def fail(message: str, *details: str) -> NoReturn:
    """Print a diagnostic and stop before any report output is written."""
    print(f"ERROR: {message}")
    for line in details:
        print(f"  {line}")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='M365 Reports - License Report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Using environment variables (client secret MUST be env var)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"
    python license_report.py

    # Use a config file
    python license_report.py --config m365-report-config.yaml

    # Print a sample config file
    python license_report.py --generate-config > m365-report-config.yaml

Security Note:
    Client secrets must be provided via MS365_CLIENT_SECRET environment
    variable to avoid exposing secrets in shell history or process listings.
        """
    )

    parser.add_argument('--config', '-c',
                        help='YAML config file (default: ./m365-report-config.yaml if present)')
    parser.add_argument('--generate-config', action='store_true',
                        help='Print a sample config file and exit')
    parser.add_argument('--tenant-id',
                        help='Azure AD tenant ID (or set MS365_TENANT_ID env var)')
    parser.add_argument('--client-id',
                        help='Azure AD application (client) ID (or set MS365_CLIENT_ID env var)')
    # Client secret is env-var only (no CLI arg to avoid shell history exposure)
    parser.add_argument('--sku-file',
                        help='SKU reference table (default: ./SkuDataComplete.csv)')
    parser.add_argument('--service-plan-file',
                        help='Service plan reference table (default: ./ServicePlanDataComplete.csv)')
    parser.add_argument('--currency',
                        help='Currency shown with prices (default: table value or EUR)')
    parser.add_argument('--stale-days', type=int,
                        help='Flag accounts without sign-in for more than N days (default: 60)')
    parser.add_argument('--departments',
                        help='Comma separated departments always shown in the cost rollup')
    parser.add_argument('--countries',
                        help='Comma separated countries always shown in the cost rollup')
    parser.add_argument('--output-dir', '-o',
                        help='Output directory (default: ./m365_reports)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return 0

    try:
        config = load_config(args)
    except (FileNotFoundError, ConfigError) as e:
        fail(str(e))

    log_level = 'DEBUG' if args.verbose else config['log_level']
    setup_logging(log_level)

    output_dir = config['output']
    stale_days = get_nested(config, 'licenses.stale_days')

    try:
        references, pricing = load_reference_tables(
            get_nested(config, 'licenses.sku_file'),
            get_nested(config, 'licenses.service_plan_file'),
            get_nested(config, 'licenses.currency'),
        )
    except ReferenceDataError as e:
        fail(str(e), "Provide the tables with --sku-file / --service-plan-file or in the config file.")

    tenant_id = config.get('tenant_id')
    client_id = config.get('client_id')
    client_secret = get_client_secret()
    if not tenant_id or not client_id or not client_secret:
        fail("Missing credentials. Please provide:",
             "--tenant-id or MS365_TENANT_ID environment variable",
             "--client-id or MS365_CLIENT_ID environment variable",
             "MS365_CLIENT_SECRET environment variable (required for security)")

    setup_logging(log_level, output_dir)
    print(f"Tenant: {tenant_id[:8]}...{tenant_id[-4:]}")
    print(f"Output: {output_dir}\n")

    # One timestamp for every record of the run
    run_timestamp = datetime.now(timezone.utc)

    try:
        logger.info("Initializing Microsoft Graph client...")
        client = get_graph_client(tenant_id, client_id, client_secret)
        data = asyncio.run(collect_license_data(client))
    except AuthError as e:
        fail(str(e), "Check the app registration credentials and granted permissions.")
    except Exception as e:
        fail(f"Failed to collect license data: {e}")

    if not data.users:
        fail("No member users returned. Check permissions and tenant configuration.")

    records = enrich_users(data.users, references, run_timestamp, data.group_names,
                           pricing, stale_days)

    with_cost = bool(pricing)
    summary = summarize_licenses(records, with_cost=with_cost)
    sku_usage = build_sku_usage(data.skus, references, pricing if with_cost else None)
    if with_cost:
        departments = rollup_by_department(records, get_nested(config, 'licenses.departments'))
        countries = rollup_by_country(records, get_nested(config, 'licenses.countries'))
    else:
        departments = countries = None

    document = build_license_document(
        records, summary, sku_usage,
        tenant_name=data.tenant_name,
        generated_at=run_timestamp,
        currency=pricing.currency,
        departments=departments,
        countries=countries,
        stale_days=stale_days,
    )

    summary_data = {
        'generated_at': get_timestamp(),
        'tenant': data.tenant_name,
        'currency': pricing.currency if with_cost else None,
        'summary': summary.to_dict(),
        'sku_usage': [usage.to_row() for usage in sku_usage],
        'departments': [bucket.to_row() for bucket in departments or []],
        'countries': [bucket.to_row() for bucket in countries or []],
    }

    basename = f"m365_license_report_{run_timestamp.strftime('%Y%m%d_%H%M%S')}"
    paths = write_report(document, output_dir, basename, summary_data)

    print(f"\n{summary.total_accounts} accounts, {summary.stale_accounts} unused, "
          f"{summary.accounts_with_duplicates} with duplicate licenses")
    print(f"HTML report: {paths['html']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
