"""
CUR Row Normalizer

Maps one raw AWS Cost and Usage Report CSV row onto the LineItem schema.
Pure: no I/O, and bad values never raise. A field that cannot be parsed
is simply left out of the record.
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import pandas as pd

# CSV header -> LineItem column
CSV_COLUMNS: Dict[str, str] = {
    "InvoiceID": "invoice_id",
    "PayerAccountId": "payer_account_id",
    "LinkedAccountId": "linked_account_id",
    "RecordType": "record_type",
    "ProductName": "product_name",
    "ProductCode": "product_code",
    "UsageType": "usage_type",
    "Operation": "operation",
    "AvailabilityZone": "availability_zone",
    "ReservedInstance": "reserved_instance",
    "ItemDescription": "item_description",
    "UsageStartDate": "usage_start_date",
    "UsageEndDate": "usage_end_date",
    "UsageQuantity": "usage_quantity",
    "BlendedRate": "blended_rate",
    "BlendedCost": "blended_cost",
    "UnblendedRate": "unblended_rate",
    "UnblendedCost": "unblended_cost",
    "ResourceId": "resource_id",
    "CurrencyCode": "currency",
}

DATE_FIELDS = ("usage_start_date", "usage_end_date")
DECIMAL_FIELDS = ("usage_quantity", "blended_rate", "blended_cost", "unblended_rate", "unblended_cost")

# Both the legacy detailed billing report and CUR tag column styles
TAG_PREFIXES = ("resourceTags/user:", "user:")

DEFAULT_CURRENCY = "USD"
UNKNOWN = "unknown"

_REGION_PATTERN = re.compile(r"(us|eu|ap|sa|ca|cn|af)-(north|south|east|west|central)-\d")
_AZ_PATTERN = re.compile(r"([a-z]{2}-[a-z]+-\d+)[a-z]")


def extract_region(value: Optional[str]) -> str:
    """
    Extract an AWS region from an availability zone or usage type.

    >>> extract_region("us-east-1a")
    'us-east-1'
    >>> extract_region("EU-DataTransfer-eu-west-2")
    'eu-west-2'
    """
    if not value:
        return UNKNOWN

    match = _REGION_PATTERN.search(value)
    if match:
        return match.group(0)

    match = _AZ_PATTERN.search(value)
    if match:
        return match.group(1)

    return UNKNOWN


def _clean(value: Any) -> Optional[str]:
    """Trimmed string, or None for missing, NaN and empty cells."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _parse_date(value: str) -> Optional[datetime]:
    try:
        ts = pd.to_datetime(value, utc=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def _parse_decimal(value: str) -> Optional[Decimal]:
    try:
        parsed = Decimal(value)
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def extract_tags(row: Mapping[str, Any]) -> Dict[str, str]:
    """Collect user-defined cost allocation tags, keyed by tag name, in column order."""
    tags: Dict[str, str] = {}
    for column, raw in row.items():
        if not isinstance(column, str):
            continue
        for prefix in TAG_PREFIXES:
            if column.startswith(prefix):
                value = _clean(raw)
                if value is not None:
                    tags[column[len(prefix):]] = value
                break
    return tags


def compute_fingerprint(row: Mapping[str, Any], occurrence: int = 0) -> str:
    """
    Stable identity of a CUR row, independent of which job ingested it.

    Every non-empty column takes part, mapped or not. occurrence numbers
    identical rows repeated within one file, starting from 0.
    """
    fields = {}
    for column, raw in row.items():
        value = _clean(raw)
        if isinstance(column, str) and value is not None:
            fields[column.strip()] = value
    payload = json.dumps(
        {"fields": fields, "occurrence": occurrence}, sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def normalize_line_item(row: Mapping[str, Any], job_id: Any = None) -> Dict[str, Any]:
    """
    Normalize a CSV row into LineItem column values.

    Derived fields:
    - account_id: linked account, else payer account, else "unknown"
    - service: product name, else product code, else "unknown"
    - cost: unblended cost, else blended cost, else 0 (an explicit 0 is kept)
    - region: from availability zone, else usage type
    """
    raw_fields: Dict[str, str] = {}
    for csv_col, field in CSV_COLUMNS.items():
        value = _clean(row.get(csv_col))
        if value is not None:
            raw_fields[field] = value

    record: Dict[str, Any] = dict(raw_fields)

    for field in DATE_FIELDS:
        if field in record:
            parsed = _parse_date(record.pop(field))
            if parsed is not None:
                record[field] = parsed

    for field in DECIMAL_FIELDS:
        if field in record:
            parsed = _parse_decimal(record.pop(field))
            if parsed is not None:
                record[field] = parsed

    tags = extract_tags(row)

    record["account_id"] = record.get("linked_account_id") or record.get("payer_account_id") or UNKNOWN
    record["service"] = record.get("product_name") or record.get("product_code") or UNKNOWN

    if record.get("unblended_cost") is not None:
        record["cost"] = record["unblended_cost"]
    elif record.get("blended_cost") is not None:
        record["cost"] = record["blended_cost"]
    else:
        record["cost"] = Decimal("0")

    record["region"] = extract_region(record.get("availability_zone") or record.get("usage_type"))
    record["currency"] = record.get("currency") or DEFAULT_CURRENCY
    quantity = record.get("usage_quantity")
    record["usage_quantity_normalized"] = quantity if quantity is not None else Decimal("0")
    record["tags"] = tags

    record["ingestion_job_id"] = job_id
    record["ingestion_date"] = datetime.now(timezone.utc)
    record["fingerprint"] = compute_fingerprint(row)

    return record
