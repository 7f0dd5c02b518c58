#!/usr/bin/env python3
"""
M365 Reports - Groups and Teams Activity Report
Classifies every Microsoft 365 group by inbox, Teams chat, and document
library activity and gives it a Pass / Warning / Fail verdict, so inactive
groups can be picked for archiving or removal.

Requirements:
- Azure AD App Registration with following API permissions (Application type):
  - Group.Read.All, GroupMember.Read.All (groups, owners, members, threads)
  - Sites.Read.All (group document libraries)
  - ChannelMessage.Read.All (Teams chat activity)
  - Organization.Read.All (tenant name)

Usage:
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    python group_activity_report.py
    python group_activity_report.py --spo-activity-days 180
"""
import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, NoReturn, Optional, Tuple

# Add repo root to path so the script runs from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from reportlib.config import (
    ConfigError,
    generate_sample_config,
    get_client_secret,
    get_nested,
    load_config,
)
from reportlib.constants import GROUP_PASS
from reportlib.graph import (
    fetch_group_snapshot,
    fetch_organization_name,
    fetch_unified_groups,
    get_graph_client,
)
from reportlib.groups import classify_group, summarize_groups
from reportlib.models import GroupReportRecord
from reportlib.report import build_group_document, write_report
from reportlib.utils import AuthError, ProgressTracker, get_timestamp, setup_logging

logger = logging.getLogger(__name__)


async def collect_group_records(
    client,
    run_timestamp: datetime,
    inbox_stale_days: int,
    spo_activity_days: int,
) -> Tuple[str, List[GroupReportRecord]]:
    """
    Fetch and classify every Microsoft 365 group.

    Returns:
        Tuple of (tenant name, records in group listing order)

    Raises:
        AuthError: If the session is missing or lacks permissions
    """
    tenant_name = await fetch_organization_name(client)
    groups = await fetch_unified_groups(client)

    records: List[GroupReportRecord] = []
    if not groups:
        return tenant_name, records

    with ProgressTracker("Group Activity", total=len(groups)) as tracker:
        for group in groups:
            tracker.update_task(group.display_name or str(group.id))
            snapshot = await fetch_group_snapshot(client, group)
            record = classify_group(snapshot, run_timestamp, inbox_stale_days, spo_activity_days)
            records.append(record)
            tracker.advance(flagged=record.status != GROUP_PASS)

    return tenant_name, records


def fail(message: str, *details: str) -> NoReturn:
    """Print a diagnostic and stop before any report output is written."""
    print(f"ERROR: {message}")
    for line in details:
        print(f"  {line}")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='M365 Reports - Groups and Teams Activity Report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Using environment variables (client secret MUST be env var)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"
    python group_activity_report.py

    # Stricter inbox staleness
    python group_activity_report.py --inbox-stale-days 180

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
    parser.add_argument('--inbox-stale-days', type=int,
                        help='Inbox is unused when its newest conversation is older (default: 365)')
    parser.add_argument('--spo-activity-days', type=int,
                        help='Window for document library activity (default: 90)')
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
    inbox_stale_days = get_nested(config, 'groups.inbox_stale_days')
    spo_activity_days = get_nested(config, 'groups.spo_activity_days')

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

    run_timestamp = datetime.now(timezone.utc)

    try:
        logger.info("Initializing Microsoft Graph client...")
        client = get_graph_client(tenant_id, client_id, client_secret)
        tenant_name, records = asyncio.run(
            collect_group_records(client, run_timestamp, inbox_stale_days, spo_activity_days)
        )
    except AuthError as e:
        fail(str(e), "Check the app registration credentials and granted permissions.")
    except Exception as e:
        fail(f"Failed to collect group activity: {e}")

    if not records:
        fail("No Microsoft 365 groups returned. Check permissions and tenant configuration.")

    summary = summarize_groups(records)
    document = build_group_document(records, summary, tenant_name, run_timestamp)

    summary_data = {
        'generated_at': get_timestamp(),
        'tenant': tenant_name,
        'thresholds': {
            'inbox_stale_days': inbox_stale_days,
            'spo_activity_days': spo_activity_days,
        },
        'summary': summary.to_dict(),
    }

    basename = f"m365_group_activity_{run_timestamp.strftime('%Y%m%d_%H%M%S')}"
    paths = write_report(document, output_dir, basename, summary_data)

    print(f"\n{summary.total_groups} groups: {summary.passed} pass, "
          f"{summary.warned} warning, {summary.failed} fail")
    print(f"HTML report: {paths['html']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
