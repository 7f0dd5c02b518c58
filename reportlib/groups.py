"""
Groups/Teams activity classification.

Turns the activity signals fetched for one Microsoft 365 group into a report
row with a warning count and a Pass / Warning / Fail verdict, used to pick
candidates for deprovisioning.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .constants import (
    DEFAULT_INBOX_STALE_DAYS,
    DEFAULT_SPO_ACTIVITY_DAYS,
    GROUP_FAIL,
    GROUP_PASS,
    GROUP_WARNING,
    LOOKUP_INBOX,
    LOOKUP_LIBRARY,
    LOOKUP_MEMBERS,
    LOOKUP_OWNERS,
    LOOKUP_TEAMS_CHAT,
    LOW_CONVERSATION_THRESHOLD,
    MAILBOX_LOW_USE,
    MAILBOX_NORMAL,
    MAILBOX_NOT_USED,
    NO_OWNERS,
    SPO_ACTIVITY_ACTIVE,
    SPO_ACTIVITY_MISSING,
    SPO_ACTIVITY_NONE,
    SPO_NEVER_CREATED,
    SPO_NO_ACTIVITY,
    SPO_NORMAL,
    UNKNOWN,
)
from .models import (
    FolderActivity,
    GroupReportRecord,
    GroupSnapshot,
    GroupSummary,
    as_utc,
    format_timestamp,
)
from .utils import format_bytes_to_gb

logger = logging.getLogger(__name__)


def mailbox_status(
    inbox: Optional[FolderActivity],
    run_timestamp: datetime,
    stale_days: int = DEFAULT_INBOX_STALE_DAYS,
) -> str:
    """Classify group inbox usage from its item count and newest item."""
    if inbox is None or not inbox.item_count or inbox.newest_item is None:
        return MAILBOX_NOT_USED
    if as_utc(inbox.newest_item) < as_utc(run_timestamp) - timedelta(days=stale_days):
        return MAILBOX_NOT_USED
    if inbox.item_count < LOW_CONVERSATION_THRESHOLD:
        return MAILBOX_LOW_USE
    return MAILBOX_NORMAL


def document_library_status(
    site_url: Optional[str],
    last_file_activity: Optional[datetime],
    run_timestamp: datetime,
    activity_days: int = DEFAULT_SPO_ACTIVITY_DAYS,
):
    """
    Classify the group's document library.

    A missing library is reported as never created and is not also counted
    as inactive.

    Returns:
        Tuple of (activity cell, status cell, warning count 0 or 1)
    """
    if not site_url:
        return SPO_ACTIVITY_MISSING, SPO_NEVER_CREATED, 1

    window_start = as_utc(run_timestamp) - timedelta(days=activity_days)
    if last_file_activity is None or as_utc(last_file_activity) < window_start:
        return SPO_ACTIVITY_NONE, SPO_NO_ACTIVITY.format(days=activity_days), 1

    return SPO_ACTIVITY_ACTIVE, SPO_NORMAL, 0


def overall_status(warning_count: int) -> str:
    if warning_count == 0:
        return GROUP_PASS
    if warning_count == 1:
        return GROUP_WARNING
    return GROUP_FAIL


def classify_group(
    snapshot: GroupSnapshot,
    run_timestamp: datetime,
    inbox_stale_days: int = DEFAULT_INBOX_STALE_DAYS,
    spo_activity_days: int = DEFAULT_SPO_ACTIVITY_DAYS,
) -> GroupReportRecord:
    """
    Build the activity report record for one group.

    Args:
        snapshot: Fetched activity signals
        run_timestamp: Captured once per run so every record agrees
        inbox_stale_days: Newest inbox item older than this is stale
        spo_activity_days: Trailing window for document library activity

    Returns:
        Immutable GroupReportRecord
    """
    failed = snapshot.failed_lookups

    # A lookup that failed says nothing about activity: show Unknown, no warning
    if LOOKUP_INBOX in failed:
        inbox_state = UNKNOWN
    else:
        inbox_state = mailbox_status(snapshot.inbox, run_timestamp, inbox_stale_days)

    if LOOKUP_LIBRARY in failed:
        spo_activity, spo_status, spo_warnings = UNKNOWN, UNKNOWN, 0
    else:
        spo_activity, spo_status, spo_warnings = document_library_status(
            snapshot.site_url, snapshot.last_file_activity, run_timestamp, spo_activity_days
        )

    warnings = spo_warnings
    if inbox_state == MAILBOX_NOT_USED:
        warnings += 1

    inbox = snapshot.inbox or FolderActivity()
    chat = snapshot.teams_chat if snapshot.teams_enabled and snapshot.teams_chat else FolderActivity()

    if LOOKUP_OWNERS in failed:
        manager = UNKNOWN
    else:
        manager = ", ".join(snapshot.owners) if snapshot.owners else NO_OWNERS

    if snapshot.created is not None:
        age_days = max((as_utc(run_timestamp) - as_utc(snapshot.created)).days, 0)
    else:
        age_days = UNKNOWN

    return GroupReportRecord(
        name=snapshot.display_name,
        manager=manager,
        member_count=UNKNOWN if LOOKUP_MEMBERS in failed else snapshot.member_count,
        guest_count=UNKNOWN if LOOKUP_MEMBERS in failed else snapshot.guest_count,
        description=snapshot.description or "",
        mailbox_status=inbox_state,
        teams_enabled=snapshot.teams_enabled,
        last_chat=format_timestamp(chat.newest_item) if snapshot.teams_enabled else "",
        chat_count=UNKNOWN if LOOKUP_TEAMS_CHAT in failed else chat.item_count,
        last_conversation=format_timestamp(inbox.newest_item),
        conversation_count=UNKNOWN if LOOKUP_INBOX in failed else inbox.item_count,
        spo_activity=spo_activity,
        spo_storage_gb=None if LOOKUP_LIBRARY in failed else format_bytes_to_gb(snapshot.storage_bytes),
        spo_status=spo_status,
        created=format_timestamp(snapshot.created),
        age_days=age_days,
        warning_count=warnings,
        status=overall_status(warnings),
    )


def summarize_groups(records: Iterable[GroupReportRecord]) -> GroupSummary:
    """Fold the run-wide counters out of the finished group records."""
    summary = GroupSummary()
    for record in records:
        summary.total_groups += 1
        if record.teams_enabled:
            summary.teams_enabled += 1
        if record.manager == NO_OWNERS:
            summary.without_owners += 1
        if isinstance(record.guest_count, int) and record.guest_count > 0:
            summary.with_guests += 1
        if record.status == GROUP_PASS:
            summary.passed += 1
        elif record.status == GROUP_WARNING:
            summary.warned += 1
        else:
            summary.failed += 1
    return summary
