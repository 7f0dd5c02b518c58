"""
Tests for reportlib/reference.py reference table loading.

Covers:
- SKU and service plan name lookup (case-insensitive, raw id fallback)
- Price parsing and currency selection
- Missing files and missing columns
"""
import os
import sys
from decimal import Decimal

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reportlib.reference import (
    ReferenceDataError,
    load_reference_tables,
    parse_price,
)

E3 = "05E9A617-0261-4CEE-BB44-138D3EF5D965"
EMS = "efccb6f7-5641-4e0e-bd10-b4976e1bf68e"
EXCHANGE_PLAN = "efb87545-963c-4e0d-99df-69c6916d9eb0"


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "ServicePlanDataComplete.csv"
    path.write_text(
        "ServicePlanId,ServicePlanDisplayName\n"
        f"{EXCHANGE_PLAN},Exchange Online (Plan 2)\n",
        encoding="utf-8",
    )
    return str(path)


def write_sku_file(tmp_path, content: str) -> str:
    path = tmp_path / "SkuDataComplete.csv"
    path.write_text(content, encoding="utf-8")
    return str(path)


class TestParsePrice:
    """Tests for price cell parsing."""

    def test_plain_and_comma_decimal(self):
        assert parse_price("16.40") == Decimal("16.40")
        assert parse_price("16,40") == Decimal("16.40")

    def test_blank_and_garbage(self):
        assert parse_price("") is None
        assert parse_price(None) is None
        assert parse_price("n/a") is None

    def test_negative_rejected(self):
        assert parse_price("-1.00") is None


class TestLoadReferenceTables:
    """Tests for load_reference_tables."""

    def test_names_without_pricing(self, tmp_path, plan_file):
        sku_file = write_sku_file(
            tmp_path,
            "SkuId,SkuPartNumber,DisplayName\n"
            f"{E3},SPE_E3,Microsoft 365 E3\n",
        )

        tables, pricing = load_reference_tables(sku_file, plan_file)

        assert tables.sku_label(E3.lower()) == "Microsoft 365 E3"
        assert tables.plan_label(EXCHANGE_PLAN.upper()) == "Exchange Online (Plan 2)"
        assert tables.sku_name(EMS) is None
        assert tables.sku_label(EMS) == EMS
        assert not pricing
        assert pricing.currency == "EUR"

    def test_prices_and_table_currency(self, tmp_path, plan_file):
        sku_file = write_sku_file(
            tmp_path,
            "SkuId,SkuPartNumber,DisplayName,Price,Currency\n"
            f"{E3},SPE_E3,Microsoft 365 E3,33.00,usd\n"
            f"{EMS},EMSPREMIUM,Enterprise Mobility + Security E5,,\n",
        )

        tables, pricing = load_reference_tables(sku_file, plan_file)

        assert pricing
        assert pricing.monthly_price(E3) == Decimal("33.00")
        assert pricing.monthly_price(EMS) is None
        assert pricing.currency == "USD"

    def test_currency_override_wins(self, tmp_path, plan_file):
        sku_file = write_sku_file(
            tmp_path,
            "SkuId,DisplayName,Price,Currency\n"
            f"{E3},Microsoft 365 E3,33.00,USD\n",
        )

        _, pricing = load_reference_tables(sku_file, plan_file, currency="chf")

        assert pricing.currency == "CHF"

    def test_unreadable_price_skipped(self, tmp_path, plan_file):
        sku_file = write_sku_file(
            tmp_path,
            "SkuId,DisplayName,Price\n"
            f"{E3},Microsoft 365 E3,call us\n",
        )

        _, pricing = load_reference_tables(sku_file, plan_file)

        assert not pricing

    def test_bom_is_stripped(self, tmp_path, plan_file):
        path = tmp_path / "SkuDataComplete.csv"
        path.write_text(f"SkuId,DisplayName\n{EMS},EMS E3\n", encoding="utf-8-sig")

        tables, _ = load_reference_tables(str(path), plan_file)

        assert tables.sku_name(EMS) == "EMS E3"

    def test_missing_file_raises(self, tmp_path, plan_file):
        with pytest.raises(ReferenceDataError, match="not found"):
            load_reference_tables(str(tmp_path / "missing.csv"), plan_file)

    def test_missing_column_raises(self, tmp_path, plan_file):
        sku_file = write_sku_file(tmp_path, f"Id,Name\n{E3},E3\n")

        with pytest.raises(ReferenceDataError, match="SkuId"):
            load_reference_tables(sku_file, plan_file)
