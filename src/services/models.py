import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from services.date_utils import end_of_day, start_of_day

HIERARCHY_FORWARD = "System.LinkTypes.Hierarchy-Forward"

# Logical field subsets requested by the hour engine
HOUR_FIELDS = ("type", "own_estimated_hours", "invested_hours")
WINDOWED_HOUR_FIELDS = HOUR_FIELDS + ("created_date", "parent_id", "occurrence_date")


@dataclass(frozen=True)
class WorkItem:
    id: int
    type: str
    title: str = ""
    state: str = ""
    assignee: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    parent_id: Optional[int] = None
    own_estimated_hours: Optional[float] = None
    invested_hours: Optional[float] = None
    occurrence_date: Optional[datetime] = None
    created_date: Optional[datetime] = None
    child_ids: Tuple[int, ...] = ()
    url: str = ""
    # Fields only the presentation side needs (projected hours, target dates...)
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def has_children(self) -> bool:
        return bool(self.child_ids)

    def is_type(self, type_name: str) -> bool:
        return self.type.lower() == type_name.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "state": self.state,
            "assigned_to": self.assignee or "",
            "tags": sorted(self.tags),
            "parent_id": self.parent_id,
            "own_estimated_hours": self.own_estimated_hours,
            "invested_hours": self.invested_hours,
            "occurrence_date": self.occurrence_date.isoformat() if self.occurrence_date else None,
            "created_date": self.created_date.isoformat() if self.created_date else None,
            "has_children": self.has_children,
            "child_ids": list(self.child_ids),
            "url": self.url,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class HierarchyLink:
    """Hierarchy-Forward edge: source is the structural parent of target"""
    source_id: int
    target_id: int


@dataclass(frozen=True)
class HourSummary:
    estimated: float = 0
    invested: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"estimated": self.estimated, "invested": self.invested}


@dataclass(frozen=True)
class DiscrepancySummary(HourSummary):
    has_discrepancy: bool = False
    own_estimated: float = 0
    child_estimated_sum: float = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            "discrepancy": self.has_discrepancy,
            "own_estimated": self.own_estimated,
            "child_estimated_sum": self.child_estimated_sum,
        })
        return result


@dataclass(frozen=True)
class DateWindow:
    """Inclusive date range; the end bound covers the whole end day"""
    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError("start date must be before or equal to end date")

    @property
    def is_bounded(self) -> bool:
        return self.start is not None or self.end is not None

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        if self.start is not None and moment < start_of_day(self.start):
            return False
        if self.end is not None and moment > end_of_day(self.end):
            return False
        return True


@dataclass(frozen=True)
class Comment:
    id: int
    text: str
    author: str
    created_date: Optional[datetime] = None
    rendered_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "rendered_text": self.rendered_text,
            "created_by": self.author,
            "created_date": self.created_date.isoformat() if self.created_date else None,
        }


def coerce_hours(value: Any) -> Optional[float]:
    """Return a numeric hours value, or None for anything that is not a finite number"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def round_hours(value: float) -> int:
    """Round half up to the nearest whole hour"""
    return int(math.floor(value + 0.5))
