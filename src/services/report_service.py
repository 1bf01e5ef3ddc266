import logging
import xlsxwriter
import re
from typing import Dict, List, Any, Mapping, Optional

from services.models import DiscrepancySummary, HourSummary, WorkItem

logger = logging.getLogger(__name__)

# ================================================================================
# COLUMN CONFIGURATION SECTION
# ================================================================================

BACKLOG_COLUMNS = [
    {'field': 'id', 'header': 'ID', 'width': 10},
    {'field': 'title', 'header': 'Title', 'width': 40},
    {'field': 'assigned_to', 'header': 'Assigned To', 'width': 20},
    {'field': 'state', 'header': 'State', 'width': 15},
    {'field': 'tags', 'header': 'Tags', 'width': 25},
    {'field': 'projected', 'header': 'Projected Hours', 'width': 15},
    {'field': 'estimated', 'header': 'Estimated Hours', 'width': 15},
    {'field': 'invested', 'header': 'Invested Hours', 'width': 15},
    {'field': 'url', 'header': 'URL', 'width': 50},
]

DEVELOPER_COLUMNS = [
    {'field': 'developer', 'header': 'Developer', 'width': 25},
    {'field': 'item_count', 'header': 'Items', 'width': 10},
    {'field': 'projected', 'header': 'Projected Hours', 'width': 15},
    {'field': 'estimated', 'header': 'Estimated Hours', 'width': 15},
    {'field': 'invested', 'header': 'Invested Hours', 'width': 15},
    {'field': 'difference', 'header': 'Difference', 'width': 12},
    {'field': 'average', 'header': 'Avg Invested / Item', 'width': 18},
]

TASK_COLUMNS = [
    {'field': 'id', 'header': 'ID', 'width': 10},
    {'field': 'title', 'header': 'Title', 'width': 40},
    {'field': 'backlog_title', 'header': 'Backlog Item', 'width': 40},
    {'field': 'assigned_to', 'header': 'Assigned To', 'width': 20},
    {'field': 'state', 'header': 'State', 'width': 15},
    {'field': 'own_estimated', 'header': 'Own Estimate', 'width': 14},
    {'field': 'child_estimated_sum', 'header': 'Children Estimate', 'width': 17},
    {'field': 'estimated', 'header': 'Estimated Hours', 'width': 15},
    {'field': 'invested', 'header': 'Invested Hours', 'width': 15},
    {'field': 'discrepancy', 'header': 'Discrepancy', 'width': 12},
]

# ================================================================================
# END COLUMN CONFIGURATION SECTION
# ================================================================================


class ReportService:
    def _clean_html_content(self, content: str) -> str:
        """Remove HTML tags from content"""
        if not content or not isinstance(content, str):
            return content or ""
        clean_content = re.sub(r'<[^>]+>', '', content)
        return ' '.join(clean_content.split())

    def backlog_rows(self, items: List[WorkItem], summaries: Mapping[int, HourSummary]) -> List[Dict[str, Any]]:
        """Flatten backlog items and their hour summaries into sheet rows"""
        rows = []
        for item in items:
            summary = summaries.get(item.id) or HourSummary()
            rows.append({
                'id': item.id,
                'title': item.title,
                'assigned_to': item.assignee or "",
                'state': item.state,
                'tags': "; ".join(sorted(item.tags)),
                'projected': item.attributes.get("projected_hours") or 0,
                'estimated': summary.estimated,
                'invested': summary.invested,
                'url': item.url,
            })
        return rows

    def task_rows(self, tasks: List[WorkItem], summaries: Mapping[int, DiscrepancySummary],
                  backlog_titles: Optional[Mapping[int, str]] = None) -> List[Dict[str, Any]]:
        """Flatten tasks and their discrepancy summaries into sheet rows"""
        backlog_titles = backlog_titles or {}
        rows = []
        for task in tasks:
            summary = summaries.get(task.id) or DiscrepancySummary()
            rows.append({
                'id': task.id,
                'title': task.title,
                'backlog_title': backlog_titles.get(task.id, ""),
                'assigned_to': task.assignee or "",
                'state': task.state,
                'own_estimated': summary.own_estimated,
                'child_estimated_sum': summary.child_estimated_sum,
                'estimated': summary.estimated,
                'invested': summary.invested,
                'discrepancy': "Yes" if summary.has_discrepancy else "No",
            })
        return rows

    def build_excel_workbook(self, output, backlog_rows: List[Dict[str, Any]],
                             developer_rows: List[Dict[str, Any]], totals: Dict[str, Any],
                             task_rows: Optional[List[Dict[str, Any]]] = None) -> None:
        """
        Build Excel workbook with hour summaries

        Args:
            output: File path or binary file object the workbook is written to
            backlog_rows: One row per backlog item (see BACKLOG_COLUMNS)
            developer_rows: One row per developer (see DEVELOPER_COLUMNS)
            totals: Totals as returned by summarize_totals()
            task_rows: Optional task rows (see TASK_COLUMNS)
        """
        try:
            workbook = xlsxwriter.Workbook(output, {'in_memory': True})

            header_format = workbook.add_format({
                'bold': True,
                'bg_color': '#D0D0D0',
                'border': 1
            })
            cell_format = workbook.add_format({'border': 1})
            total_format = workbook.add_format({'bold': True, 'border': 1, 'top': 2})

            worksheet = self._build_sheet_with_config(workbook, "Backlog Items", backlog_rows, BACKLOG_COLUMNS,
                                                      header_format, cell_format)
            self._add_totals_row(worksheet, len(backlog_rows), totals, total_format)

            self._build_sheet_with_config(workbook, "Developers", developer_rows, DEVELOPER_COLUMNS,
                                          header_format, cell_format)

            if task_rows is not None:
                self._build_sheet_with_config(workbook, "Tasks", task_rows, TASK_COLUMNS,
                                              header_format, cell_format)

            workbook.close()
            logger.info("Excel report written")

        except Exception as e:
            logger.exception(f"Error building Excel workbook: {str(e)}")
            raise

    def _build_sheet_with_config(self, workbook, worksheet_name: str, rows: List[Dict[str, Any]],
                                 columns_config: List[Dict], header_format, cell_format):
        """
        Generic method to build a worksheet using column configuration
        """
        logger.info(f"Building {worksheet_name} sheet with {len(rows)} rows")
        worksheet = workbook.add_worksheet(worksheet_name)

        for col_idx, col_config in enumerate(columns_config):
            worksheet.set_column(col_idx, col_idx, col_config['width'])
            worksheet.write(0, col_idx, col_config['header'], header_format)

        for row, data in enumerate(rows, start=1):
            for col_idx, col_config in enumerate(columns_config):
                field_name = col_config['field']
                value = data.get(field_name, "")
                if field_name in ['title', 'backlog_title'] and isinstance(value, str):
                    value = self._clean_html_content(value)
                worksheet.write(row, col_idx, value, cell_format)

        return worksheet

    def _add_totals_row(self, worksheet, row_count: int, totals: Dict[str, Any], total_format) -> None:
        """Write the TOTAL row under the backlog items, skipping one row after the data"""
        summary_row = row_count + 2
        columns = [col['field'] for col in BACKLOG_COLUMNS]

        worksheet.write(summary_row, 0, "TOTAL", total_format)
        for field_name in ('projected', 'estimated', 'invested'):
            worksheet.write(summary_row, columns.index(field_name), totals.get(field_name, 0), total_format)

        worksheet.write(summary_row + 1, 0, "Difference", total_format)
        worksheet.write(summary_row + 1, columns.index('invested'), totals.get('difference', 0), total_format)
        worksheet.write(summary_row + 2, 0, "Productivity %", total_format)
        worksheet.write(summary_row + 2, columns.index('invested'), totals.get('productivity', 0), total_format)
