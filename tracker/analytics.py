"""
Dashboard analytics.

Pure functions over snapshot collections; nothing here writes.  All
results are plain dicts/lists ready to be returned as JSON.  Percentages
are rounded to one decimal place.
"""
from collections import Counter
from datetime import date
from typing import Iterable, Optional, TypeVar

from models.purchase_order import POItem, PurchaseOrder
from models.requirement import (
    ALL_PRIORITIES,
    ALL_STATUSES,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    PRIORITY_URGENT,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Requirement,
)

T = TypeVar("T")

# Supply queue ordering: most pressing first
PRIORITY_RANK = {PRIORITY_URGENT: 1, PRIORITY_HIGH: 2, PRIORITY_MEDIUM: 3, PRIORITY_LOW: 4}

# Analytics time-range selector → months back from today
TIME_RANGES = {"1month": 1, "3months": 3, "6months": 6, "1year": 12}


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


# ------------------------------------------------------------------
# Dashboard cards
# ------------------------------------------------------------------

def dashboard_summary(requirements: Iterable[Requirement]) -> dict:
    """Counts shown on the main dashboard cards."""
    reqs = list(requirements)
    completed = sum(1 for r in reqs if r.status == STATUS_COMPLETED)
    return {
        "urgent":         sum(1 for r in reqs if r.priority == PRIORITY_URGENT and r.status != STATUS_COMPLETED),
        "active":         sum(1 for r in reqs if r.status != STATUS_COMPLETED),
        "completed":      completed,
        "in_progress":    sum(1 for r in reqs if r.status == STATUS_IN_PROGRESS),
        "pending":        sum(1 for r in reqs if r.status == STATUS_PENDING),
        "total":          len(reqs),
        "completion_rate": _pct(completed, len(reqs)),
    }


def key_metrics(
    requirements: Iterable[Requirement],
    purchase_orders: Iterable[PurchaseOrder] = (),
) -> dict:
    reqs = list(requirements)
    required = sum(r.total_required for r in reqs)
    supplied = sum(r.total_supplied for r in reqs)
    completed = sum(1 for r in reqs if r.status == STATUS_COMPLETED)
    return {
        "total_required":  required,
        "total_supplied":  supplied,
        "total_pending":   required - supplied,
        "efficiency":      _pct(supplied, required),
        "urgent_count":    sum(1 for r in reqs if r.priority == PRIORITY_URGENT and r.status != STATUS_COMPLETED),
        "completed_count": completed,
        "completion_rate": _pct(completed, len(reqs)),
        "po_count":        len(list(purchase_orders)),
    }


# ------------------------------------------------------------------
# Breakdowns
# ------------------------------------------------------------------

def material_consumption(requirements: Iterable[Requirement], limit: Optional[int] = 10) -> list[dict]:
    """Per material: required, supplied and efficiency; largest demand first."""
    totals: dict[str, dict] = {}
    for req in requirements:
        for item in req.selected_items:
            row = totals.setdefault(item.material_name, {"required": 0, "supplied": 0, "unit": item.unit})
            row["required"] += item.quantity_required
            row["supplied"] += item.quantity_supplied

    rows = [
        {"material": name, **data, "efficiency": _pct(data["supplied"], data["required"])}
        for name, data in totals.items()
    ]
    rows.sort(key=lambda r: r["required"], reverse=True)
    return rows[:limit] if limit else rows


def area_consumption(requirements: Iterable[Requirement]) -> list[dict]:
    """Per area of application: required, supplied, pending and efficiency."""
    totals: dict[str, dict] = {}
    for req in requirements:
        area = req.area_of_application or "Unassigned"
        row = totals.setdefault(area, {"required": 0, "supplied": 0, "pending": 0})
        for item in req.selected_items:
            row["required"] += item.quantity_required
            row["supplied"] += item.quantity_supplied
            row["pending"] += item.quantity_required - item.quantity_supplied

    return [
        {"area": area, **data, "efficiency": _pct(data["supplied"], data["required"])}
        for area, data in sorted(totals.items())
    ]


def monthly_trends(requirements: Iterable[Requirement]) -> list[dict]:
    """Required / supplied / pending per creation month, oldest first."""
    totals: dict[str, dict] = {}
    for req in requirements:
        month = req.created_at.strftime("%Y-%m")
        row = totals.setdefault(month, {"required": 0, "supplied": 0})
        row["required"] += req.total_required
        row["supplied"] += req.total_supplied

    return [
        {"month": month, **data, "pending": data["required"] - data["supplied"]}
        for month, data in sorted(totals.items())
    ]


def _distribution(values: list[str], order: Iterable[str], key: str) -> list[dict]:
    counts = Counter(values)
    return [
        {key: value, "count": counts[value], "percentage": _pct(counts[value], len(values))}
        for value in order
        if counts[value]
    ]


def priority_distribution(requirements: Iterable[Requirement]) -> list[dict]:
    return _distribution([r.priority for r in requirements], ALL_PRIORITIES, "priority")


def status_distribution(requirements: Iterable[Requirement]) -> list[dict]:
    return _distribution([r.status for r in requirements], ALL_STATUSES, "status")


# ------------------------------------------------------------------
# Lists
# ------------------------------------------------------------------

def supply_queue(requirements: Iterable[Requirement]) -> list[Requirement]:
    """Open requirements, Urgent first, then by earliest delivery date."""
    return sorted(
        (r for r in requirements if r.status != STATUS_COMPLETED),
        key=lambda r: (PRIORITY_RANK.get(r.priority, 5), r.delivery_date),
    )


def recent_requirements(requirements: Iterable[Requirement], limit: int = 10) -> list[Requirement]:
    return sorted(requirements, key=lambda r: r.created_at, reverse=True)[:limit]


def po_item_usage(item: POItem) -> float:
    """Percentage of the ordered quantity no longer on balance."""
    return _pct(item.quantity - item.balance_qty, item.quantity)


def filter_by_po_number(entities: Iterable[T], query: Optional[str]) -> list[T]:
    """Case-insensitive PO-number substring match.  A blank query keeps everything."""
    entities = list(entities)
    needle = (query or "").strip().lower()
    if not needle:
        return entities
    return [e for e in entities if needle in e.po_number.lower()]


def filter_by_area(requirements: Iterable[Requirement], area: Optional[str]) -> list[Requirement]:
    if not area or area == "all":
        return list(requirements)
    return [r for r in requirements if r.area_of_application == area]


def filter_by_time_range(
    requirements: Iterable[Requirement],
    time_range: Optional[str],
    today: Optional[date] = None,
) -> list[Requirement]:
    """Keep requirements created within the selected range (``3months`` …)."""
    if not time_range or time_range not in TIME_RANGES:
        return list(requirements)
    today = today or date.today()
    months = TIME_RANGES[time_range]
    year, month = divmod(today.year * 12 + today.month - 1 - months, 12)
    cutoff = date(year, month + 1, min(today.day, 28))
    return [r for r in requirements if r.created_at.date() >= cutoff]


def analytics_report(
    requirements: Iterable[Requirement],
    purchase_orders: Iterable[PurchaseOrder] = (),
    time_range: Optional[str] = None,
    area: Optional[str] = None,
    today: Optional[date] = None,
) -> dict:
    """Everything the analytics view shows, in one payload."""
    reqs = filter_by_area(filter_by_time_range(requirements, time_range, today), area)
    return {
        "key_metrics":           key_metrics(reqs, purchase_orders),
        "material_consumption":  material_consumption(reqs),
        "area_consumption":      area_consumption(reqs),
        "monthly_trends":        monthly_trends(reqs),
        "priority_distribution": priority_distribution(reqs),
        "status_distribution":   status_distribution(reqs),
    }
