"""
Tests for the CUR row normalizer.

Pure-function tests: no database.
"""

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from costlens.services.ingestion.normalizer import (
    compute_fingerprint,
    extract_region,
    extract_tags,
    normalize_line_item,
)


def base_row(**overrides):
    row = {
        "InvoiceID": "inv-1",
        "PayerAccountId": "111111111111",
        "LinkedAccountId": "222222222222",
        "ProductName": "Amazon Elastic Compute Cloud",
        "ProductCode": "AmazonEC2",
        "UsageType": "USE1-BoxUsage:t3.micro",
        "AvailabilityZone": "us-east-1a",
        "UsageStartDate": "2024-01-15T00:00:00Z",
        "UsageEndDate": "2024-01-15T01:00:00Z",
        "UsageQuantity": "1.5",
        "UnblendedCost": "0.0156",
        "BlendedCost": "0.0150",
    }
    row.update(overrides)
    return row


class TestExtractRegion:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("us-east-1a", "us-east-1"),
            ("eu-west-2b", "eu-west-2"),
            ("EU-DataTransfer-eu-west-2", "eu-west-2"),
            ("ap-southeast-1a", "ap-southeast-1"),
            ("me-south-1a", "me-south-1"),
            ("BoxUsage:t3.micro", "unknown"),
            ("", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_region_examples(self, value, expected):
        assert extract_region(value) == expected


class TestNormalizeLineItem:
    def test_maps_columns_and_derives_dimensions(self):
        job_id = uuid.uuid4()
        record = normalize_line_item(base_row(), job_id)

        assert record["invoice_id"] == "inv-1"
        assert record["account_id"] == "222222222222"
        assert record["service"] == "Amazon Elastic Compute Cloud"
        assert record["region"] == "us-east-1"
        assert record["cost"] == Decimal("0.0156")
        assert record["usage_quantity_normalized"] == Decimal("1.5")
        assert record["currency"] == "USD"
        assert record["ingestion_job_id"] == job_id
        assert record["usage_start_date"] == datetime(2024, 1, 15, tzinfo=timezone.utc)
        assert record["ingestion_date"].tzinfo is not None

    def test_account_falls_back_to_payer_then_unknown(self):
        assert normalize_line_item(base_row(LinkedAccountId=""))["account_id"] == "111111111111"
        record = normalize_line_item(base_row(LinkedAccountId="", PayerAccountId="  "))
        assert record["account_id"] == "unknown"

    def test_service_falls_back_to_product_code(self):
        assert normalize_line_item(base_row(ProductName=""))["service"] == "AmazonEC2"
        assert normalize_line_item(base_row(ProductName="", ProductCode=""))["service"] == "unknown"

    def test_explicit_zero_cost_is_kept(self):
        """A free-tier row reports 0 unblended; the blended value must not replace it."""
        record = normalize_line_item(base_row(UnblendedCost="0", BlendedCost="3.50"))
        assert record["cost"] == Decimal("0")

    def test_cost_falls_back_to_blended_then_zero(self):
        assert normalize_line_item(base_row(UnblendedCost=""))["cost"] == Decimal("0.0150")
        assert normalize_line_item(base_row(UnblendedCost="", BlendedCost=""))["cost"] == Decimal("0")

    def test_unparseable_values_are_omitted(self):
        record = normalize_line_item(
            base_row(UnblendedCost="n/a", BlendedCost="", UsageStartDate="not-a-date", UsageQuantity="NaN")
        )
        assert record["cost"] == Decimal("0")
        assert "usage_start_date" not in record
        assert "usage_quantity" not in record
        assert record["usage_quantity_normalized"] == Decimal("0")

    def test_missing_and_nan_cells_are_omitted(self):
        row = base_row(ResourceId=math.nan, Operation="   ")
        record = normalize_line_item(row)
        assert "resource_id" not in record
        assert "operation" not in record

    def test_region_from_usage_type_when_no_zone(self):
        record = normalize_line_item(base_row(AvailabilityZone="", UsageType="EU-DataTransfer-eu-west-2"))
        assert record["region"] == "eu-west-2"

    def test_currency_from_row(self):
        assert normalize_line_item(base_row(CurrencyCode="EUR"))["currency"] == "EUR"


class TestTags:
    def test_collects_both_prefix_styles(self):
        row = base_row(**{
            "resourceTags/user:Environment": "prod",
            "user:Team": " platform ",
            "resourceTags/user:Empty": "",
            "resourceTags/aws:createdBy": "root",
        })
        assert extract_tags(row) == {"Environment": "prod", "Team": "platform"}

    def test_tags_are_attached_to_record(self):
        record = normalize_line_item(base_row(**{"resourceTags/user:CostCenter": "42"}))
        assert record["tags"] == {"CostCenter": "42"}


class TestFingerprint:
    def test_same_row_same_fingerprint_across_jobs(self):
        first = normalize_line_item(base_row(), uuid.uuid4())
        second = normalize_line_item(base_row(), uuid.uuid4())
        assert first["fingerprint"] == second["fingerprint"]
        assert len(first["fingerprint"]) == 64

    def test_different_cost_different_fingerprint(self):
        first = normalize_line_item(base_row(UnblendedCost="1.00"))
        second = normalize_line_item(base_row(UnblendedCost="1.01"))
        assert first["fingerprint"] != second["fingerprint"]

    def test_unmapped_columns_participate(self):
        first = normalize_line_item(base_row(**{"identity/LineItemId": "li-1"}))
        second = normalize_line_item(base_row(**{"identity/LineItemId": "li-2"}))
        assert first["fingerprint"] != second["fingerprint"]

    def test_tags_participate(self):
        tagged = normalize_line_item(base_row(**{"resourceTags/user:Environment": "prod"}))
        assert tagged["fingerprint"] != normalize_line_item(base_row())["fingerprint"]

    def test_occurrence_separates_repeated_rows(self):
        row = base_row()
        assert compute_fingerprint(row) == normalize_line_item(row)["fingerprint"]
        assert compute_fingerprint(row, 1) != compute_fingerprint(row)

    def test_key_order_and_empty_cells_do_not_matter(self):
        assert compute_fingerprint({"a": "1", "b": "2"}) == compute_fingerprint({"b": "2", "a": "1"})
        assert compute_fingerprint({"a": "1", "b": math.nan}) == compute_fingerprint({"a": "1", "c": "  "})
