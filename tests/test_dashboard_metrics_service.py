"""Tests for services.dashboard_metrics_service."""

from datetime import date

from services import dashboard_metrics_service as metrics
from services.models import DiscrepancySummary, HourSummary, WorkItem


PBI = "Product Backlog Item"


def backlog():
    return [
        WorkItem(id=1, type=PBI, title="Website redesign", state="Active", assignee="Ana",
                 tags=frozenset({"ClientA"}), attributes={"projected_hours": 10}),
        WorkItem(id=2, type=PBI, title="Mobile app", state="New", assignee="Luis",
                 tags=frozenset({"ClientB", "Urgent"}), attributes={"projected_hours": 5}),
        WorkItem(id=3, type=PBI, title="Old portal", state="Done", assignee="Ana",
                 tags=frozenset({"ClientA"})),
        WorkItem(id=4, type=PBI, title="Unassigned", state="Active"),
    ]


SUMMARIES = {
    1: HourSummary(estimated=20, invested=25),
    2: HourSummary(estimated=10, invested=5),
    3: HourSummary(estimated=4, invested=4),
}


class TestFilters:

    def test_completed_items_hidden_by_default(self):
        ids = [item.id for item in metrics.filter_backlog_items(backlog())]
        assert ids == [1, 2, 4]

    def test_include_completed(self):
        assert len(metrics.filter_backlog_items(backlog(), include_completed=True)) == 4

    def test_developer_and_tag_filters(self):
        items = metrics.filter_backlog_items(backlog(), developers=["Ana", "Luis"], tags=["Urgent"])
        assert [item.id for item in items] == [2]

    def test_search_matches_id_or_title(self):
        assert [i.id for i in metrics.filter_backlog_items(backlog(), search_term="MOBILE")] == [2]
        assert [i.id for i in metrics.filter_backlog_items(backlog(), search_term="4")] == [4]

    def test_item_ids_and_states(self):
        items = metrics.filter_backlog_items(backlog(), item_ids=[1, 2], states=["New"])
        assert [item.id for item in items] == [2]

    def test_filter_tasks(self):
        tasks = [
            WorkItem(id=10, type="Task", assignee="Ana", tags=frozenset({"Backend"})),
            WorkItem(id=11, type="Task", assignee="Ana", tags=frozenset({"Frontend"})),
            WorkItem(id=12, type="Task", assignee="Luis", tags=frozenset({"Backend"})),
        ]
        assert [t.id for t in metrics.filter_tasks(tasks, developers=["Ana"], tag="Backend")] == [10]
        assert len(metrics.filter_tasks(tasks)) == 3

    def test_available_values(self):
        items = backlog()
        assert metrics.available_developers(items) == ["Ana", "Luis"]
        assert metrics.available_states(items) == ["Active", "Done", "New"]
        assert metrics.available_tags(items) == ["ClientA", "ClientB", "Urgent"]


class TestSummaries:

    def test_totals(self):
        items = metrics.filter_backlog_items(backlog())
        totals = metrics.summarize_totals(items, SUMMARIES)
        assert totals == {
            "projected": 15,
            "estimated": 30,
            "invested": 30,
            "difference": 0,
            "productivity": 100,
        }

    def test_totals_without_estimate(self):
        totals = metrics.summarize_totals(backlog()[3:], {4: HourSummary(0, 7)})
        assert totals["productivity"] == 0
        assert totals["difference"] == 7

    def test_productivity_rounds_half_up(self):
        totals = metrics.summarize_totals(backlog()[:1], {1: HourSummary(estimated=8, invested=1)})
        assert totals["productivity"] == 13

    def test_by_developer(self):
        result = metrics.summarize_by_developer(backlog(), SUMMARIES)
        assert [row["developer"] for row in result] == ["Ana", "Luis"]
        ana = result[0]
        assert ana["item_count"] == 2
        assert ana["estimated"] == 24
        assert ana["invested"] == 29
        assert ana["difference"] == 5
        assert ana["average"] == 14.5

    def test_by_developer_skips_items_without_summary(self):
        result = metrics.summarize_by_developer(backlog(), {2: HourSummary(1, 1)})
        assert [row["developer"] for row in result] == ["Luis"]

    def test_by_tag(self):
        result = metrics.summarize_by_tag(backlog(), SUMMARIES)
        by_tag = {row["tag"]: row for row in result}
        assert by_tag["ClientA"]["invested"] == 29
        assert by_tag["ClientA"]["item_count"] == 2
        assert by_tag["Urgent"]["estimated"] == 10

    def test_task_analysis_metrics(self):
        tasks = [
            WorkItem(id=10, type="Task", assignee="Ana"),
            WorkItem(id=11, type="Task", assignee="Luis"),
            WorkItem(id=12, type="Task", assignee="Luis"),
        ]
        summaries = {
            10: DiscrepancySummary(estimated=5, invested=3),
            11: DiscrepancySummary(estimated=5, invested=4),
            12: DiscrepancySummary(estimated=5, invested=3),
        }
        result = metrics.task_analysis_metrics(tasks, summaries)
        assert result["total_tasks"] == 3
        assert result["total_invested_hours"] == 10
        assert result["avg_hours_per_task"] == 3.33
        assert [d["developer"] for d in result["developers"]] == ["Luis", "Ana"]
        assert result["developers"][0]["average_hours"] == 3.5

    def test_task_analysis_metrics_empty(self):
        result = metrics.task_analysis_metrics([], {})
        assert result["avg_hours_per_task"] == 0
        assert result["developers"] == []

    def test_state_distribution(self):
        assert metrics.state_distribution(backlog()) == [
            {"state": "Active", "count": 2},
            {"state": "New", "count": 1},
            {"state": "Done", "count": 1},
        ]


def forecast_backlog():
    return [
        WorkItem(id=1, type=PBI, title="Website redesign", assignee="Ana",
                 attributes={"pending_hours": 16, "weekly_load": 40, "board_column": "Doing"}),
        WorkItem(id=2, type=PBI, title="Mobile app", assignee="Luis",
                 attributes={"pending_hours": 8, "weekly_load": 0, "board_column": "Backlog"}),
        WorkItem(id=3, type=PBI, title="Intranet", assignee="Ana",
                 attributes={"board_column": "Backlog"}),
    ]


class TestForecast:

    def test_filter_by_developer_column_and_search(self):
        items = forecast_backlog()
        assert [i.id for i in metrics.filter_forecast_items(items, developer="Ana")] == [1, 3]
        assert [i.id for i in metrics.filter_forecast_items(items, board_column="Backlog")] == [2, 3]
        assert [i.id for i in metrics.filter_forecast_items(items, developer="Ana", search_term="INTRA")] == [3]
        assert [i.id for i in metrics.filter_forecast_items(items, search_term="2")] == [2]

    def test_available_board_columns(self):
        assert metrics.available_board_columns(forecast_backlog()) == ["Backlog", "Doing"]

    def test_forecast_items(self):
        # Friday 2024-03-01
        rows = metrics.forecast_items(forecast_backlog(), today=date(2024, 3, 1))

        assert rows[0]["end_date"] == "2024-03-05"
        assert rows[0]["work_days"] == 2
        assert rows[0]["board_column"] == "Doing"
        assert rows[1]["end_date"] is None
        assert rows[2]["pending_hours"] == 0
        assert rows[2]["work_days"] == 0
