"""
Microsoft Graph fetchers for the license and group activity reports.

Requirements:
- Azure AD App Registration with following API permissions (Application type):
  - User.Read.All, AuditLog.Read.All (users, licenses, sign-in activity)
  - Organization.Read.All (tenant name, subscribed SKUs)
  - Group.Read.All, GroupMember.Read.All (groups, owners, members, threads)
  - Sites.Read.All (group document libraries)
  - ChannelMessage.Read.All (Teams chat activity)

All fetchers are coroutines; the msgraph-sdk client is async only. Results
are converted to the plain dataclasses in models.py before they leave this
module, so the enrichment code never touches SDK types.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from azure.identity import ClientSecretCredential
from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph.generated.groups.groups_request_builder import GroupsRequestBuilder
from msgraph.generated.users.users_request_builder import UsersRequestBuilder
from msgraph.graph_service_client import GraphServiceClient

from .constants import (
    DEFAULT_RETRY_ATTEMPTS,
    GRAPH_PAGE_SIZE,
    GRAPH_SCOPES,
    LOOKUP_INBOX,
    LOOKUP_LIBRARY,
    LOOKUP_MEMBERS,
    LOOKUP_OWNERS,
    LOOKUP_TEAMS_CHAT,
    STATE_ACTIVE,
    STATE_ERROR,
    UNKNOWN,
)
from .models import (
    AssignedLicense,
    DirectoryUser,
    FolderActivity,
    GroupSnapshot,
    LicenseAssignment,
    SubscribedSku,
)
from .utils import check_and_raise_auth_error, retry_with_backoff

logger = logging.getLogger(__name__)

USER_SELECT = [
    "id",
    "displayName",
    "userPrincipalName",
    "country",
    "department",
    "jobTitle",
    "createdDateTime",
    "assignedLicenses",
    "licenseAssignmentStates",
    "signInActivity",
]

GROUP_SELECT = [
    "id",
    "displayName",
    "description",
    "createdDateTime",
    "groupTypes",
    "resourceProvisioningOptions",
]


# =============================================================================
# Graph Client
# =============================================================================

def get_graph_client(tenant_id: str, client_id: str, client_secret: str) -> GraphServiceClient:
    """Create Microsoft Graph API client."""
    credential = ClientSecretCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret
    )
    return GraphServiceClient(credentials=credential, scopes=GRAPH_SCOPES)


@retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS, exceptions=(httpx.TransportError,))
async def graph_get(request_builder, request_configuration=None):
    """GET through a request builder, retrying transient transport failures."""
    if request_configuration is None:
        return await request_builder.get()
    return await request_builder.get(request_configuration=request_configuration)


async def collect_all_pages(initial_response, get_next_page_func: Callable[[str], Awaitable[Any]]) -> List[Any]:
    """Helper to collect all pages from a paginated Graph API response.

    Microsoft Graph API returns at most one page per call. This helper
    follows odata_next_link to collect all items.

    Args:
        initial_response: The first response from a Graph API call
        get_next_page_func: Async function to get next page given a next_link

    Returns:
        List of all items from all pages
    """
    all_items: List[Any] = []
    response = initial_response

    while response:
        if getattr(response, 'value', None):
            all_items.extend(response.value)

        next_link = getattr(response, 'odata_next_link', None)
        if not next_link:
            break
        try:
            response = await get_next_page_func(next_link)
        except Exception as e:
            check_and_raise_auth_error(e, "fetch next page")
            logger.warning(f"Failed to fetch next page: {e}")
            break

    return all_items


# =============================================================================
# Tenant
# =============================================================================

async def fetch_organization_name(client: GraphServiceClient) -> str:
    """Tenant display name, or "Unknown" when the organization is not readable."""
    try:
        response = await graph_get(client.organization)
    except Exception as e:
        check_and_raise_auth_error(e, "read organization")
        logger.warning(f"Could not read organization name: {e}")
        return UNKNOWN

    if response and response.value:
        return response.value[0].display_name or UNKNOWN
    return UNKNOWN


async def fetch_subscribed_skus(client: GraphServiceClient) -> List[SubscribedSku]:
    """Tenant subscriptions with consumed and enabled unit counts."""
    skus: List[SubscribedSku] = []
    try:
        response = await graph_get(client.subscribed_skus)
    except Exception as e:
        check_and_raise_auth_error(e, "collect subscribed SKUs")
        logger.error(f"Failed to collect subscribed SKUs: {e}")
        return skus

    for sku in (response.value if response and response.value else []):
        prepaid = getattr(sku, 'prepaid_units', None)
        skus.append(SubscribedSku(
            sku_id=str(sku.sku_id),
            sku_part_number=sku.sku_part_number or "",
            consumed_units=sku.consumed_units or 0,
            enabled_units=(prepaid.enabled or 0) if prepaid else 0,
        ))

    logger.info(f"Found {len(skus)} subscribed SKUs")
    return skus


# =============================================================================
# Users
# =============================================================================

def normalize_state(state: Optional[str]) -> str:
    """Map Graph assignment states onto active / error."""
    value = (state or "").lower()
    if value in ('active', 'activewithsolvableerrors'):
        return STATE_ACTIVE
    if value == 'error':
        return STATE_ERROR
    return value


def convert_user(user) -> DirectoryUser:
    """Convert a Graph user object into a DirectoryUser."""
    sign_in = getattr(user, 'sign_in_activity', None)

    assigned = [
        AssignedLicense(
            sku_id=str(lic.sku_id),
            disabled_plans=[str(p) for p in (lic.disabled_plans or [])],
        )
        for lic in (user.assigned_licenses or [])
        if lic.sku_id
    ]

    states = [
        LicenseAssignment(
            sku_id=str(state.sku_id),
            source_group_id=str(state.assigned_by_group) if state.assigned_by_group else None,
            state=normalize_state(state.state),
            error=state.error if state.error and state.error.lower() != 'none' else None,
            last_updated=state.last_updated_date_time,
        )
        for state in (user.license_assignment_states or [])
        if state.sku_id
    ]

    return DirectoryUser(
        user_id=str(user.id),
        display_name=user.display_name or "",
        user_principal_name=user.user_principal_name or "",
        country=user.country or "",
        department=user.department or "",
        job_title=user.job_title or "",
        created=user.created_date_time,
        last_sign_in=sign_in.last_sign_in_date_time if sign_in else None,
        last_non_interactive_sign_in=sign_in.last_non_interactive_sign_in_date_time if sign_in else None,
        assigned_licenses=assigned,
        assignment_states=states,
    )


async def fetch_member_users(client: GraphServiceClient) -> List[DirectoryUser]:
    """
    All member (non-guest) users with licensing and sign-in metadata.

    Raises:
        AuthError: If the session is missing or lacks permissions
    """
    query = UsersRequestBuilder.UsersRequestBuilderGetQueryParameters(
        select=USER_SELECT,
        filter="userType eq 'Member'",
        top=GRAPH_PAGE_SIZE,
    )
    config = RequestConfiguration(query_parameters=query)

    try:
        response = await graph_get(client.users, config)
    except Exception as e:
        check_and_raise_auth_error(e, "list users")
        logger.error(f"Failed to collect users: {e}")
        return []

    raw_users = await collect_all_pages(
        response, lambda link: graph_get(client.users.with_url(link))
    )

    users = []
    for raw in raw_users:
        try:
            users.append(convert_user(raw))
        except Exception as e:
            logger.debug(f"Failed to process user {getattr(raw, 'id', '?')}: {e}")
            continue

    logger.info(f"Found {len(users)} member users")
    return users


async def resolve_group_names(client: GraphServiceClient, group_ids: Iterable[str]) -> Dict[str, str]:
    """
    Display names for licensing groups.

    Groups that cannot be read are left out; callers fall back to the raw id.
    """
    names: Dict[str, str] = {}
    for group_id in group_ids:
        try:
            group = await graph_get(client.groups.by_group_id(group_id))
        except Exception as e:
            check_and_raise_auth_error(e, f"read group {group_id}")
            logger.warning(f"Could not resolve group {group_id}: {e}")
            continue
        if group and group.display_name:
            names[group_id] = group.display_name
    return names


# =============================================================================
# Groups
# =============================================================================

async def fetch_unified_groups(client: GraphServiceClient) -> List[Any]:
    """
    All Microsoft 365 (Unified) groups, i.e. groups with a group mailbox.

    Raises:
        AuthError: If the session is missing or lacks permissions
    """
    query = GroupsRequestBuilder.GroupsRequestBuilderGetQueryParameters(
        select=GROUP_SELECT,
        filter="groupTypes/any(c:c eq 'Unified')",
        top=GRAPH_PAGE_SIZE,
    )
    config = RequestConfiguration(query_parameters=query)

    try:
        response = await graph_get(client.groups, config)
    except Exception as e:
        check_and_raise_auth_error(e, "list groups")
        logger.error(f"Failed to collect Microsoft 365 groups: {e}")
        return []

    groups = await collect_all_pages(
        response, lambda link: graph_get(client.groups.with_url(link))
    )
    logger.info(f"Found {len(groups)} Microsoft 365 groups")
    return groups


def is_teams_enabled(group) -> bool:
    return 'Team' in (getattr(group, 'resource_provisioning_options', None) or [])


def _is_guest(member) -> bool:
    if getattr(member, 'user_type', None) == 'Guest':
        return True
    return '#EXT#' in (getattr(member, 'user_principal_name', None) or '')


async def fetch_owner_names(client: GraphServiceClient, group_id: str) -> List[str]:
    builder = client.groups.by_group_id(group_id).owners
    response = await graph_get(builder)
    owners = await collect_all_pages(response, lambda link: graph_get(builder.with_url(link)))
    return [o.display_name for o in owners if getattr(o, 'display_name', None)]


async def fetch_member_counts(client: GraphServiceClient, group_id: str):
    """Returns (member count, external guest count)."""
    builder = client.groups.by_group_id(group_id).members
    response = await graph_get(builder)
    members = await collect_all_pages(response, lambda link: graph_get(builder.with_url(link)))
    return len(members), sum(1 for m in members if _is_guest(m))


async def fetch_inbox_activity(client: GraphServiceClient, group_id: str) -> FolderActivity:
    """Conversation count and newest delivery in the group inbox."""
    builder = client.groups.by_group_id(group_id).threads
    response = await graph_get(builder)
    threads = await collect_all_pages(response, lambda link: graph_get(builder.with_url(link)))

    delivered = [t.last_delivered_date_time for t in threads if getattr(t, 'last_delivered_date_time', None)]
    logger.debug(f"Fetched {len(threads)} threads for group {group_id}")
    return FolderActivity(item_count=len(threads), newest_item=max(delivered) if delivered else None)


async def fetch_document_library(client: GraphServiceClient, group_id: str):
    """
    Returns (library URL, last file activity, storage bytes).

    A group whose drive was never provisioned returns (None, None, 0).
    """
    try:
        drive = await graph_get(client.groups.by_group_id(group_id).drive)
    except Exception as e:
        check_and_raise_auth_error(e, f"read drive of group {group_id}")
        if getattr(e, 'response_status_code', None) == 404:
            return None, None, 0
        raise

    if not drive or not drive.web_url:
        return None, None, 0

    storage = 0
    if getattr(drive, 'quota', None) and drive.quota.used:
        storage = int(drive.quota.used)

    last_activity = getattr(drive, 'last_modified_date_time', None)
    try:
        root = await graph_get(client.drives.by_drive_id(drive.id).root)
        if root and root.last_modified_date_time:
            last_activity = root.last_modified_date_time
    except Exception as e:
        logger.debug(f"Could not read drive root for group {group_id}: {e}")

    return drive.web_url, last_activity, storage


async def fetch_teams_chat_activity(client: GraphServiceClient, group_id: str) -> FolderActivity:
    """Message count and newest message in the team's primary channel."""
    team = client.teams.by_team_id(group_id)
    channel = await graph_get(team.primary_channel)
    if not channel or not channel.id:
        return FolderActivity()

    builder = team.channels.by_channel_id(channel.id).messages
    response = await graph_get(builder)
    messages = await collect_all_pages(response, lambda link: graph_get(builder.with_url(link)))

    stamps = [
        getattr(m, 'last_modified_date_time', None) or getattr(m, 'created_date_time', None)
        for m in messages
    ]
    stamps = [s for s in stamps if s]
    return FolderActivity(item_count=len(messages), newest_item=max(stamps) if stamps else None)


async def fetch_group_snapshot(client: GraphServiceClient, group) -> GroupSnapshot:
    """
    Gather every activity signal for one group.

    Each lookup fails independently: a failed lookup is logged and named in
    failed_lookups; its fields keep their empty defaults.
    """
    group_id = str(group.id)
    snapshot = GroupSnapshot(
        group_id=group_id,
        display_name=group.display_name or group_id,
        description=group.description or "",
        created=getattr(group, 'created_date_time', None),
        teams_enabled=is_teams_enabled(group),
    )

    try:
        snapshot.owners = await fetch_owner_names(client, group_id)
    except Exception as e:
        check_and_raise_auth_error(e, f"read owners of group {group_id}")
        logger.warning(f"Could not read owners of {snapshot.display_name}: {e}")
        snapshot.failed_lookups.add(LOOKUP_OWNERS)

    try:
        snapshot.member_count, snapshot.guest_count = await fetch_member_counts(client, group_id)
    except Exception as e:
        check_and_raise_auth_error(e, f"read members of group {group_id}")
        logger.warning(f"Could not read members of {snapshot.display_name}: {e}")
        snapshot.failed_lookups.add(LOOKUP_MEMBERS)

    try:
        snapshot.inbox = await fetch_inbox_activity(client, group_id)
    except Exception as e:
        check_and_raise_auth_error(e, f"read inbox of group {group_id}")
        logger.warning(f"Could not read inbox of {snapshot.display_name}: {e}")
        snapshot.failed_lookups.add(LOOKUP_INBOX)

    try:
        snapshot.site_url, snapshot.last_file_activity, snapshot.storage_bytes = \
            await fetch_document_library(client, group_id)
    except Exception as e:
        check_and_raise_auth_error(e, f"read document library of group {group_id}")
        logger.warning(f"Could not read document library of {snapshot.display_name}: {e}")
        snapshot.failed_lookups.add(LOOKUP_LIBRARY)

    if snapshot.teams_enabled:
        try:
            snapshot.teams_chat = await fetch_teams_chat_activity(client, group_id)
        except Exception as e:
            check_and_raise_auth_error(e, f"read Teams chat of group {group_id}")
            logger.warning(f"Could not read Teams chat of {snapshot.display_name}: {e}")
            snapshot.failed_lookups.add(LOOKUP_TEAMS_CHAT)

    return snapshot
