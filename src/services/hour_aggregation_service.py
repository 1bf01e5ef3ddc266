import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, NamedTuple, Optional

from services.models import (
    DateWindow,
    DiscrepancySummary,
    HourSummary,
    WorkItem,
    HOUR_FIELDS,
    WINDOWED_HOUR_FIELDS,
    round_hours,
)
from services.settings import FieldMapping

logger = logging.getLogger(__name__)


class _TaskSummaryResult(NamedTuple):
    task_id: int
    summary: Optional[DiscrepancySummary]
    error: Optional[BaseException]


class HourAggregationService:
    """
    Rolls estimated and invested hours up the work item hierarchy

    The repository is any object offering fetch_descendant_links() and
    fetch_details() with the semantics of AzureDevOpsService.
    """

    def __init__(self, repository, fields: Optional[FieldMapping] = None, max_workers: int = 8):
        self.repository = repository
        self.fields = fields or FieldMapping()
        self.max_workers = max_workers

    def summarize_descendants(self, root_ids: Iterable[int],
                              date_window: Optional[DateWindow] = None) -> HourSummary:
        """
        Sum the hours of all Task and line entry descendants of the given roots

        Without a window, estimated is the sum of Task estimates and invested the
        sum of line entry hours. With a window, invested only counts line entries
        dated inside it, and estimated only counts Tasks that either own such a
        line entry or were created inside the window. Windowed totals therefore
        answer "what was invested and what new work entered", they are not a
        snapshot and do not add up to the unwindowed total.

        Args:
            root_ids: Root work item IDs, duplicates are ignored
            date_window: Optional inclusive date range

        Returns:
            HourSummary rounded to whole hours
        """
        root_ids = list(dict.fromkeys(root_ids))
        if not root_ids:
            return HourSummary(0, 0)

        links = self.repository.fetch_descendant_links(
            root_ids,
            [self.fields.task_type, self.fields.line_entry_type],
            True
        )
        # A descendant reachable through several paths still counts once
        descendant_ids = list(dict.fromkeys(link.target_id for link in links))
        if not descendant_ids:
            return HourSummary(0, 0)

        windowed = date_window is not None and date_window.is_bounded
        fields = WINDOWED_HOUR_FIELDS if windowed else HOUR_FIELDS
        details = self._unique_items(self.repository.fetch_details(descendant_ids, list(fields)))

        if windowed:
            estimated, invested = self._sum_in_window(details, date_window)
        else:
            estimated, invested = self._sum_all(details)

        summary = HourSummary(estimated=round_hours(estimated), invested=round_hours(invested))
        logger.debug(f"Hours below {root_ids}: Est={summary.estimated}, Inv={summary.invested}")
        return summary

    def _unique_items(self, items: List[WorkItem]) -> List[WorkItem]:
        seen = {}
        for item in items:
            seen.setdefault(item.id, item)
        return list(seen.values())

    def _sum_all(self, items: List[WorkItem]):
        estimated = 0.0
        invested = 0.0
        for item in items:
            if item.is_type(self.fields.task_type):
                estimated += item.own_estimated_hours or 0
            elif item.is_type(self.fields.line_entry_type):
                invested += item.invested_hours or 0
        return estimated, invested

    def _sum_in_window(self, items: List[WorkItem], date_window: DateWindow):
        invested = 0.0
        relevant_task_ids = set()

        # Line entries dated inside the window, and the Tasks they belong to
        for item in items:
            if not item.is_type(self.fields.line_entry_type):
                continue
            if item.invested_hours is None or not date_window.contains(item.occurrence_date):
                continue
            invested += item.invested_hours
            if item.parent_id:
                relevant_task_ids.add(item.parent_id)

        # Tasks created inside the window
        for item in items:
            if item.is_type(self.fields.task_type) and date_window.contains(item.created_date):
                relevant_task_ids.add(item.id)

        estimated = 0.0
        for item in items:
            if item.is_type(self.fields.task_type) and item.id in relevant_task_ids:
                estimated += item.own_estimated_hours or 0

        return estimated, invested

    def summarize_roots(self, root_ids: Iterable[int],
                        date_window: Optional[DateWindow] = None) -> Dict[int, HourSummary]:
        """
        Summarize each root on its own, with the lookups running concurrently

        Any failure propagates to the caller.
        """
        root_ids = list(dict.fromkeys(root_ids))
        if not root_ids:
            return {}

        summaries = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(root_ids))) as executor:
            futures = {
                executor.submit(self.summarize_descendants, [root_id], date_window): root_id
                for root_id in root_ids
            }
            for future in as_completed(futures):
                summaries[futures[future]] = future.result()

        return summaries

    def resolve_task_summary(self, task: WorkItem) -> DiscrepancySummary:
        """
        Decide which estimate to report for a Task and flag mismatches

        The Task's own estimate wins when it is positive; otherwise the rolled up
        estimate of its descendants is used. A discrepancy is reported when the
        Task has children, a positive own estimate, and the two differ.
        """
        own_estimated = task.own_estimated_hours or 0
        has_children = task.has_children

        descendant_summary = self.summarize_descendants([task.id])
        child_estimated_sum = descendant_summary.estimated

        estimated = own_estimated if own_estimated > 0 else child_estimated_sum
        has_discrepancy = has_children and own_estimated > 0 and own_estimated != child_estimated_sum

        return DiscrepancySummary(
            estimated=estimated,
            invested=descendant_summary.invested,
            has_discrepancy=has_discrepancy,
            own_estimated=own_estimated,
            child_estimated_sum=child_estimated_sum,
        )

    def _resolve_tagged(self, task: WorkItem) -> _TaskSummaryResult:
        try:
            return _TaskSummaryResult(task.id, self.resolve_task_summary(task), None)
        except Exception as e:
            return _TaskSummaryResult(task.id, None, e)

    def resolve_task_summaries(self, tasks: Iterable[WorkItem]) -> Dict[int, DiscrepancySummary]:
        """
        Resolve the summary of every Task concurrently

        A Task whose lookup fails gets a zero-filled summary; the failure is
        logged and the rest of the batch continues.

        Returns:
            Dict keyed by Task ID
        """
        unique_tasks = list({task.id: task for task in tasks}.values())
        if not unique_tasks:
            return {}

        summaries = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(unique_tasks))) as executor:
            futures = [executor.submit(self._resolve_tagged, task) for task in unique_tasks]
            for future in as_completed(futures):
                result = future.result()
                if result.error is not None:
                    logger.error(f"Failed to fetch summary for task {result.task_id}: {result.error}")
                    summaries[result.task_id] = DiscrepancySummary()
                else:
                    summaries[result.task_id] = result.summary

        logger.info(f"Resolved summaries for {len(summaries)} tasks")
        return summaries
