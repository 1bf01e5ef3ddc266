from collections import Counter
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from services.date_utils import calculate_projected_end_date
from services.models import HourSummary, WorkItem, round_hours

COMPLETED_STATES = ["Done", "Closed", "Resolved", "Removed"]


def available_developers(items: Iterable[WorkItem]) -> List[str]:
    return sorted({item.assignee for item in items if item.assignee})


def available_states(items: Iterable[WorkItem]) -> List[str]:
    return sorted({item.state for item in items if item.state})


def available_tags(items: Iterable[WorkItem]) -> List[str]:
    tags = set()
    for item in items:
        tags.update(item.tags)
    return sorted(tags)


def filter_backlog_items(items: Iterable[WorkItem], developers: Optional[List[str]] = None,
                         item_ids: Optional[List[int]] = None, states: Optional[List[str]] = None,
                         tags: Optional[List[str]] = None, search_term: str = "",
                         include_completed: bool = False) -> List[WorkItem]:
    """
    Apply the dashboard filters to backlog items

    Completed items are dropped unless include_completed is set. An item
    matches the tag filter when it carries any of the selected tags.
    """
    result = list(items)

    if not include_completed:
        result = [item for item in result if item.state not in COMPLETED_STATES]

    if developers:
        selected_devs = set(developers)
        result = [item for item in result if item.assignee in selected_devs]

    if item_ids:
        selected_ids = set(item_ids)
        result = [item for item in result if item.id in selected_ids]

    if search_term:
        term = search_term.lower()
        result = [item for item in result if term in str(item.id) or term in item.title.lower()]

    if states:
        selected_states = set(states)
        result = [item for item in result if item.state in selected_states]

    if tags:
        selected_tags = set(tags)
        result = [item for item in result if item.tags & selected_tags]

    return result


def filter_tasks(tasks: Iterable[WorkItem], developers: Optional[List[str]] = None,
                 tag: Optional[str] = None) -> List[WorkItem]:
    """Tasks assigned to any of the developers and carrying the tag"""
    result = list(tasks)
    if developers:
        selected_devs = set(developers)
        result = [task for task in result if task.assignee in selected_devs]
    if tag:
        result = [task for task in result if tag in task.tags]
    return result


def _projected_hours(item: WorkItem) -> float:
    return item.attributes.get("projected_hours") or 0


def summarize_totals(items: Iterable[WorkItem], summaries: Mapping[int, HourSummary]) -> Dict[str, Any]:
    """
    Totals over the displayed backlog items

    Returns:
        Dict with projected, estimated, invested, difference and productivity (percent)
    """
    total_projected = 0
    total_estimated = 0
    total_invested = 0
    for item in items:
        total_projected += _projected_hours(item)
        summary = summaries.get(item.id)
        if summary:
            total_estimated += summary.estimated
            total_invested += summary.invested

    difference = total_invested - total_estimated
    productivity = round_hours(total_invested / total_estimated * 100) if total_estimated > 0 else 0
    return {
        "projected": total_projected,
        "estimated": total_estimated,
        "invested": total_invested,
        "difference": difference,
        "productivity": productivity,
    }


def summarize_by_developer(items: Iterable[WorkItem], summaries: Mapping[int, HourSummary]) -> List[Dict[str, Any]]:
    """Per assignee totals, skipping items without assignee or summary, sorted by name"""
    by_dev: Dict[str, Dict[str, Any]] = {}
    for item in items:
        summary = summaries.get(item.id)
        if not item.assignee or summary is None:
            continue
        current = by_dev.setdefault(item.assignee, {"projected": 0, "estimated": 0, "invested": 0, "item_count": 0})
        current["projected"] += _projected_hours(item)
        current["estimated"] += summary.estimated
        current["invested"] += summary.invested
        current["item_count"] += 1

    result = []
    for dev_name in sorted(by_dev):
        data = by_dev[dev_name]
        result.append({
            "developer": dev_name,
            **data,
            "difference": data["invested"] - data["estimated"],
            "average": round(data["invested"] / data["item_count"], 2) if data["item_count"] else 0,
        })
    return result


def summarize_by_tag(items: Iterable[WorkItem], summaries: Mapping[int, HourSummary]) -> List[Dict[str, Any]]:
    """Per tag totals; an item with several tags counts towards each of them"""
    by_tag: Dict[str, Dict[str, Any]] = {}
    for item in items:
        summary = summaries.get(item.id)
        if summary is None:
            continue
        for tag in item.tags:
            current = by_tag.setdefault(tag, {"estimated": 0, "invested": 0, "item_count": 0})
            current["estimated"] += summary.estimated
            current["invested"] += summary.invested
            current["item_count"] += 1

    return [{"tag": tag, **by_tag[tag]} for tag in sorted(by_tag)]


def task_analysis_metrics(tasks: Iterable[WorkItem], summaries: Mapping[int, HourSummary]) -> Dict[str, Any]:
    """
    Invested-hours metrics for the task analysis view

    Returns:
        Dict with total_tasks, total_invested_hours, avg_hours_per_task and
        developers (sorted by invested hours, highest first)
    """
    tasks = list(tasks)
    total_tasks = len(tasks)
    total_invested = sum(summaries[task.id].invested for task in tasks if task.id in summaries)
    avg_hours = round(total_invested / total_tasks, 2) if total_tasks > 0 else 0

    by_dev: Dict[str, Dict[str, Any]] = {}
    for task in tasks:
        summary = summaries.get(task.id)
        if not task.assignee or summary is None:
            continue
        current = by_dev.setdefault(task.assignee, {"task_count": 0, "invested_hours": 0})
        current["task_count"] += 1
        current["invested_hours"] += summary.invested

    developers = [
        {
            "developer": dev_name,
            **data,
            "average_hours": round(data["invested_hours"] / data["task_count"], 2) if data["task_count"] else 0,
        }
        for dev_name, data in by_dev.items()
    ]
    developers.sort(key=lambda d: d["invested_hours"], reverse=True)

    return {
        "total_tasks": total_tasks,
        "total_invested_hours": total_invested,
        "avg_hours_per_task": avg_hours,
        "developers": developers,
    }


def state_distribution(items: Iterable[WorkItem]) -> List[Dict[str, Any]]:
    """Item count per state, most common first"""
    counts = Counter(item.state for item in items)
    return [{"state": state, "count": count} for state, count in counts.most_common()]


def available_board_columns(items: Iterable[WorkItem]) -> List[str]:
    return sorted({item.attributes["board_column"] for item in items if item.attributes.get("board_column")})


def filter_forecast_items(items: Iterable[WorkItem], developer: Optional[str] = None,
                          search_term: str = "", board_column: Optional[str] = None) -> List[WorkItem]:
    """Backlog items of one developer in one board column whose ID or title matches the search term"""
    result = list(items)
    if developer:
        result = [item for item in result if item.assignee == developer]
    if board_column:
        result = [item for item in result if item.attributes.get("board_column") == board_column]
    if search_term:
        term = search_term.lower()
        result = [item for item in result if term in str(item.id) or term in item.title.lower()]
    return result


def forecast_items(items: Iterable[WorkItem], today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Projected end date of each backlog item from its pending hours and weekly load

    Returns:
        One dict per item with id, title, assigned_to, board_column,
        pending_hours, weekly_load, end_date (ISO date or None) and work_days
    """
    rows = []
    for item in items:
        pending_hours = item.attributes.get("pending_hours") or 0
        weekly_load = item.attributes.get("weekly_load") or 0
        end_date, work_days = calculate_projected_end_date(pending_hours, weekly_load, today=today)
        rows.append({
            "id": item.id,
            "title": item.title,
            "assigned_to": item.assignee or "",
            "board_column": item.attributes.get("board_column") or "",
            "pending_hours": pending_hours,
            "weekly_load": weekly_load,
            "end_date": end_date.isoformat() if end_date else None,
            "work_days": work_days,
        })
    return rows
