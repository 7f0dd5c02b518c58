"""
Reference tables for license reporting.

SKU table columns: SkuId, SkuPartNumber, DisplayName, Price (optional,
monthly), Currency (optional). Service plan table columns: ServicePlanId,
ServicePlanDisplayName.
"""
import csv
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional

from .constants import DEFAULT_CURRENCY
from .models import PricingTable

logger = logging.getLogger(__name__)


class ReferenceDataError(Exception):
    """A reference table is missing or cannot be read."""


@dataclass
class ReferenceTables:
    """SKU and service-plan display names keyed by lower-cased identifier."""
    sku_names: Dict[str, str] = field(default_factory=dict)
    plan_names: Dict[str, str] = field(default_factory=dict)

    def sku_name(self, sku_id: str) -> Optional[str]:
        return self.sku_names.get(str(sku_id).lower())

    def plan_name(self, plan_id: str) -> Optional[str]:
        return self.plan_names.get(str(plan_id).lower())

    def sku_label(self, sku_id: str) -> str:
        """Display name for a SKU, or the raw id when the table has no entry."""
        name = self.sku_name(sku_id)
        if name is None:
            logger.debug(f"SKU {sku_id} not in reference table, using raw id")
            return str(sku_id)
        return name

    def plan_label(self, plan_id: str) -> str:
        """Display name for a service plan, or the raw id when unknown."""
        name = self.plan_name(plan_id)
        if name is None:
            logger.debug(f"Service plan {plan_id} not in reference table, using raw id")
            return str(plan_id)
        return name


def _read_rows(path: str, required: tuple) -> list:
    file_path = Path(path).expanduser()
    if not file_path.exists():
        raise ReferenceDataError(f"Reference file not found: {path}")

    # utf-8-sig strips the BOM spreadsheet exports like to add
    with open(file_path, newline='', encoding='utf-8-sig') as f:
        reader = csv.DictReader(f)
        missing = [col for col in required if col not in (reader.fieldnames or [])]
        if missing:
            raise ReferenceDataError(f"{path} is missing column(s): {', '.join(missing)}")
        return list(reader)


def parse_price(value: Optional[str]) -> Optional[Decimal]:
    """Parse a monthly price cell. Blank cells and garbage give None."""
    if value is None or not str(value).strip():
        return None
    text = str(value).strip().replace(',', '.')
    try:
        price = Decimal(text)
    except InvalidOperation:
        return None
    if price < 0:
        return None
    return price


def load_reference_tables(sku_file: str, service_plan_file: str, currency: Optional[str] = None):
    """
    Load SKU names, service plan names, and pricing.

    Args:
        sku_file: Path to the SKU CSV
        service_plan_file: Path to the service plan CSV
        currency: Currency override; the SKU table's Currency column wins
            over the default, this argument wins over both

    Returns:
        Tuple of (ReferenceTables, PricingTable). The pricing table is empty
        (falsy) when no SKU row carries a price.

    Raises:
        ReferenceDataError: If a file is missing or lacks required columns
    """
    sku_rows = _read_rows(sku_file, ('SkuId', 'DisplayName'))
    plan_rows = _read_rows(service_plan_file, ('ServicePlanId', 'ServicePlanDisplayName'))

    tables = ReferenceTables()
    pricing = PricingTable(currency=DEFAULT_CURRENCY)
    table_currency = None

    for row in sku_rows:
        sku_id = (row.get('SkuId') or '').strip().lower()
        if not sku_id:
            continue
        tables.sku_names[sku_id] = (row.get('DisplayName') or '').strip() or row.get('SkuPartNumber') or sku_id

        raw_price = row.get('Price')
        price = parse_price(raw_price)
        if price is not None:
            pricing.monthly_prices[sku_id] = price
        elif raw_price and raw_price.strip():
            logger.warning(f"Ignoring unreadable price {raw_price!r} for SKU {sku_id}")

        row_currency = (row.get('Currency') or '').strip()
        if row_currency and not table_currency:
            table_currency = row_currency.upper()

    for row in plan_rows:
        plan_id = (row.get('ServicePlanId') or '').strip().lower()
        if plan_id:
            tables.plan_names[plan_id] = (row.get('ServicePlanDisplayName') or '').strip() or plan_id

    pricing.currency = (currency or table_currency or DEFAULT_CURRENCY).upper()

    logger.info(f"Loaded {len(tables.sku_names)} SKUs and {len(tables.plan_names)} service plans")
    if pricing:
        logger.info(f"Pricing available for {len(pricing.monthly_prices)} SKUs ({pricing.currency})")
    else:
        logger.info("No pricing data in SKU table - cost columns disabled")

    return tables, pricing
