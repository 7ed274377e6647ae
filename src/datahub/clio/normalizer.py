"""
Clio API response normalizer.

Converts raw dicts from the Clio v4 API into clean field dicts that map
directly onto the record models. No DB access here; callers (SyncExecutor,
DriftDetector) handle persistence and aggregation.

Two source shapes:

  activities.json list items (WIP):
    - One object per time/expense entry
    - Nested references: matter {id, display_number}, user {id}, bill {id},
      activity_description {id, name}, expense_category {id, name}
    - Timestamps are ISO 8601 with offset ("2024-01-15T09:30:00+00:00")

  invoice_payments_v2 report download (collected time):
    - report_data is keyed by matter; each value holds bill_data,
      matter_payment_data and line_items_data.line_items
    - Matters missing any of the three blocks carry no payable lines and
      are skipped
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 timestamps into aware UTC; naive values are taken as UTC."""
    if not value:
        return None
    if not isinstance(value, datetime):
        s = str(value).strip().replace("Z", "+00:00")
        try:
            value = datetime.fromisoformat(s)
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _money(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _ref_id(obj: Any) -> Optional[int]:
    if isinstance(obj, dict) and obj.get("id") is not None:
        return int(obj["id"])
    return None


def normalize_wip_activity(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one activities.json item into WipEntry field dict.

    Args:
        raw: Activity dict from the Clio list endpoint.

    Returns:
        Dict with keys matching WipEntry columns.
    """
    matter = raw.get("matter") or {}
    description = raw.get("activity_description") or {}
    category = raw.get("expense_category")

    return {
        "clio_id": int(raw["id"]),
        "entry_date": _parse_date(raw.get("date")),
        "created_at": _parse_datetime(raw.get("created_at")),
        "updated_at": _parse_datetime(raw.get("updated_at")),
        "type": raw.get("type"),
        "matter_id": _ref_id(matter),
        "matter_display_number": matter.get("display_number"),
        "quantity_in_hours": _money(raw.get("quantity_in_hours")),
        "note": raw.get("note") or "",
        "total": _money(raw.get("total")),
        "price": _money(raw.get("price")),
        "expense_category": (
            f"id: {category.get('id')}, name: {category.get('name')}"
            if isinstance(category, dict) else None
        ),
        "activity_description_id": _ref_id(description),
        "activity_description_name": description.get("name"),
        "user_id": _ref_id(raw.get("user")),
        "bill_id": _ref_id(raw.get("bill")),
        "billed": bool(raw.get("billed")),
    }


def flatten_collected_report(report_data: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Flatten an invoice_payments_v2 report into CollectedTime field dicts.

    Args:
        report_data: The `report_data` object of a downloaded report.

    Returns:
        (rows, skipped_matters): one dict per paid line item, and the number
        of matter blocks that were skipped for missing data.
    """
    rows: List[Dict[str, Any]] = []
    skipped = 0
    for matter_data in (report_data or {}).values():
        bill = matter_data.get("bill_data")
        payment = matter_data.get("matter_payment_data")
        items = matter_data.get("line_items_data")
        if not bill or not payment or not items:
            skipped += 1
            continue

        payment_date = _parse_date(payment.get("date"))
        for item in items.get("line_items") or []:
            rows.append({
                "clio_id": int(item["id"]),
                "matter_id": payment.get("matter_id"),
                "bill_id": bill.get("bill_id"),
                "contact_id": payment.get("contact_id"),
                "work_date": _parse_date(item.get("date")),
                "created_at": _parse_datetime(item.get("created_at")),
                "kind": item.get("kind"),
                "type": item.get("type"),
                "activity_type": item.get("activity_type"),
                "description": item.get("description"),
                "sub_total": _money(item.get("sub_total")),
                "tax": _money(item.get("tax")),
                "secondary_tax": _money(item.get("secondary_tax")),
                "payment_allocated": _money(item.get("payment_allocated")),
                "user_id": item.get("user_id"),
                "user_name": item.get("user_name"),
                "payment_date": payment_date,
            })
    return rows, skipped
