"""
Report rendering.

Reports are first built as a ReportDocument (plain data: header, table rows,
summary sections) and only then turned into HTML and CSV. The same row dicts
feed both outputs, so every CSV cell shows up unchanged in the HTML table.
"""
import html
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .constants import (
    COST_COLUMN,
    GROUP_COLUMNS,
    LICENSE_COLUMNS,
    ROLLUP_COLUMNS,
    SKU_USAGE_COLUMNS,
)
from .models import (
    CostBucket,
    GroupReportRecord,
    GroupSummary,
    LicenseSummary,
    SkuUsageRecord,
    UserReportRecord,
    format_money,
)
from .utils import write_csv, write_json, write_text

logger = logging.getLogger(__name__)


@dataclass
class SummarySection:
    """A titled block of sentences with an optional small table."""
    title: str
    lines: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ReportDocument:
    """Presentation-free model of one report."""
    title: str
    tenant_name: str
    generated_at: datetime
    columns: List[str]
    rows: List[Dict[str, str]]
    sections: List[SummarySection] = field(default_factory=list)
    highlight_column: Optional[str] = None
    highlight_ok: tuple = ()


# =============================================================================
# Document Builders
# =============================================================================

def license_columns(with_cost: bool) -> List[str]:
    if with_cost:
        return list(LICENSE_COLUMNS)
    return [c for c in LICENSE_COLUMNS if c != COST_COLUMN]


def build_license_document(
    records: List[UserReportRecord],
    summary: LicenseSummary,
    sku_usage: List[SkuUsageRecord],
    tenant_name: str,
    generated_at: datetime,
    currency: Optional[str] = None,
    departments: Optional[List[CostBucket]] = None,
    countries: Optional[List[CostBucket]] = None,
    stale_days: int = 60,
) -> ReportDocument:
    """Assemble the license report from records and aggregates."""
    with_cost = summary.total_cost is not None
    rows = [record.to_row(include_cost=with_cost) for record in records]

    overview = SummarySection(title="Summary")
    overview.lines.append(
        f"{summary.total_accounts} member accounts were checked, "
        f"{summary.licensed_accounts} of them hold at least one license."
    )
    overview.lines.append(
        f"{summary.stale_accounts} accounts ({summary.stale_percentage}%) have not signed in "
        f"for more than {stale_days} days; {summary.unknown_sign_in} have no known sign-in."
    )
    overview.lines.append(
        f"{summary.accounts_with_duplicates} accounts hold duplicate licenses "
        f"({summary.duplicate_instances} duplicate assignments in total)."
    )
    overview.lines.append(
        f"{summary.group_errors} group-based and {summary.direct_errors} direct license "
        f"assignments are in an error state."
    )
    if with_cost:
        overview.lines.append(
            f"Total annual license cost is {format_money(summary.total_cost)} {currency}, "
            f"an average of {format_money(summary.average_cost)} {currency} per licensed account."
        )

    sections = [overview]

    sku_section = SummarySection(
        title="License usage by SKU",
        columns=list(SKU_USAGE_COLUMNS) if with_cost else [c for c in SKU_USAGE_COLUMNS if c != "Annual cost"],
    )
    for usage in sku_usage:
        row = usage.to_row()
        if not with_cost:
            del row["Annual cost"]
        sku_section.rows.append(row)
    over = [u for u in sku_usage if u.consumed_units > u.purchased_units]
    sku_section.lines.append(
        f"{len(sku_usage)} SKUs are in use, "
        f"{sum(u.consumed_units for u in sku_usage)} units consumed out of "
        f"{sum(u.purchased_units for u in sku_usage)} purchased."
    )
    if over:
        sku_section.lines.append(f"{len(over)} SKUs are consumed beyond their enabled units.")
    sections.append(sku_section)

    if with_cost:
        for title, buckets in (("Cost by department", departments), ("Cost by country", countries)):
            if buckets is None:
                continue
            section = SummarySection(title=title, columns=list(ROLLUP_COLUMNS))
            section.rows = [b.to_row() for b in buckets]
            if buckets:
                top = buckets[0]
                section.lines.append(
                    f"{len(buckets)} groupings; the most expensive is {top.name} with "
                    f"{format_money(top.total_cost)} {currency} across {top.account_count} accounts."
                )
            sections.append(section)

    return ReportDocument(
        title="Microsoft 365 License Report",
        tenant_name=tenant_name,
        generated_at=generated_at,
        columns=license_columns(with_cost),
        rows=rows,
        sections=sections,
        highlight_column="Status",
        highlight_ok=("OK",),
    )


def build_group_document(
    records: List[GroupReportRecord],
    summary: GroupSummary,
    tenant_name: str,
    generated_at: datetime,
) -> ReportDocument:
    """Assemble the groups/teams activity report."""
    overview = SummarySection(title="Summary")
    overview.lines.append(
        f"{summary.total_groups} Microsoft 365 groups were checked, "
        f"{summary.teams_enabled} of them are Teams-enabled."
    )
    overview.lines.append(
        f"{summary.passed} passed ({summary.percentage(summary.passed)}%), "
        f"{summary.warned} have one warning ({summary.percentage(summary.warned)}%) and "
        f"{summary.failed} failed ({summary.percentage(summary.failed)}%)."
    )
    overview.lines.append(
        f"{summary.without_owners} groups have no owners and "
        f"{summary.with_guests} include external guests."
    )
    if summary.failed:
        overview.lines.append("Failed groups are candidates for archiving or removal.")

    return ReportDocument(
        title="Microsoft 365 Groups and Teams Activity Report",
        tenant_name=tenant_name,
        generated_at=generated_at,
        columns=list(GROUP_COLUMNS),
        rows=[record.to_row() for record in records],
        sections=[overview],
        highlight_column="Status",
        highlight_ok=("Pass",),
    )


# =============================================================================
# HTML Rendering
# =============================================================================

_STYLE = """
        body {
            font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
            margin: 0;
            padding: 20px;
            background-color: #f4f6f9;
            color: #333;
        }
        .container {
            margin: 0 auto;
            background-color: white;
            padding: 30px;
            border-radius: 10px;
            box-shadow: 0 4px 12px rgba(0,0,0,0.1);
        }
        h1 {
            color: #1F4E79;
            border-bottom: 4px solid #2E75B6;
            padding-bottom: 10px;
        }
        .meta {
            color: #666;
            margin-bottom: 25px;
        }
        table {
            border-collapse: collapse;
            width: 100%;
            font-size: 0.85em;
            margin-bottom: 25px;
        }
        th {
            background-color: #1F4E79;
            color: white;
            padding: 8px;
            text-align: left;
            position: sticky;
            top: 0;
        }
        td {
            border: 1px solid #ddd;
            padding: 6px 8px;
            vertical-align: top;
        }
        tr:nth-child(even) {
            background-color: #f8f9fb;
        }
        td.flagged {
            background-color: #FFC7CE;
            font-weight: bold;
        }
        .summary {
            background-color: #eef3f8;
            padding: 20px;
            border-radius: 8px;
        }
        .summary h2 {
            color: #1F4E79;
            margin-top: 0;
        }
"""


def _escape(value) -> str:
    return html.escape(str(value if value is not None else ""))


def render_table(columns: List[str], rows: List[Dict[str, str]],
                 highlight_column: Optional[str] = None, highlight_ok: tuple = ()) -> str:
    """Render rows as an HTML table, flagging cells whose value is not OK."""
    head = "".join(f"<th>{_escape(c)}</th>" for c in columns)
    body = []
    for row in rows:
        cells = []
        for column in columns:
            value = row.get(column, "")
            css = ""
            if column == highlight_column and value not in highlight_ok:
                css = ' class="flagged"'
            cells.append(f"<td{css}>{_escape(value)}</td>")
        body.append(f"<tr>{''.join(cells)}</tr>")
    return f"<table>\n<thead><tr>{head}</tr></thead>\n<tbody>\n" + "\n".join(body) + "\n</tbody>\n</table>"


def render_section(section: SummarySection) -> str:
    parts = [f"<h2>{_escape(section.title)}</h2>"]
    parts.extend(f"<p>{_escape(line)}</p>" for line in section.lines)
    if section.columns:
        parts.append(render_table(section.columns, section.rows))
    return "\n".join(parts)


def render_html(document: ReportDocument) -> str:
    """Render a ReportDocument as a standalone HTML page."""
    generated = document.generated_at.strftime("%Y-%m-%d %H:%M:%S")
    table_html = render_table(document.columns, document.rows,
                              document.highlight_column, document.highlight_ok)
    sections_html = "\n".join(render_section(s) for s in document.sections)

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{_escape(document.title)}</title>
    <style>{_STYLE}    </style>
</head>
<body>
<div class="container">
    <h1>{_escape(document.title)}</h1>
    <div class="meta">
        <p>Tenant: <strong>{_escape(document.tenant_name)}</strong></p>
        <p>Generated: {_escape(generated)}</p>
    </div>
{table_html}
    <div class="summary">
{sections_html}
    </div>
</div>
</body>
</html>
"""


# =============================================================================
# Output
# =============================================================================

def write_report(document: ReportDocument, output_dir: str, basename: str,
                 summary: Optional[dict] = None) -> Dict[str, str]:
    """
    Write the CSV and HTML outputs (and an optional JSON summary).

    Returns:
        Mapping of output kind to file path
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = {
        'csv': os.path.join(output_dir, f"{basename}.csv"),
        'html': os.path.join(output_dir, f"{basename}.html"),
    }

    write_csv(document.rows, paths['csv'], fieldnames=document.columns)
    write_text(render_html(document), paths['html'])

    if summary is not None:
        paths['json'] = os.path.join(output_dir, f"{basename}_summary.json")
        write_json(summary, paths['json'])

    logger.info(f"Report written to {output_dir} ({len(document.rows)} rows)")
    return paths
