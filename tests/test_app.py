"""Tests for the Flask API with the Azure DevOps repository replaced by an in-memory one."""

import io
import zipfile

import pytest
import requests

import app as app_module
from services.azure_devops_service import AzureDevOpsAuthenticationError


CREDENTIALS = {"AZURE_PAT": "pat", "ORGANIZATION": "org", "PROJECT": "proj"}


@pytest.fixture
def client(repository, monkeypatch):
    created = []

    def fake_service(session, settings):
        created.append(session)
        return repository

    monkeypatch.setattr(app_module, "AzureDevOpsService", fake_service)
    app_module.app.config["TESTING"] = True
    test_client = app_module.app.test_client()
    test_client.created_sessions = created
    return test_client


def post(client, path, **body):
    return client.post(f"/hours-dashboard/{path}", json={**CREDENTIALS, **body})


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/hours-dashboard/health").get_json() == {"status": "healthy"}


class TestValidation:

    def test_missing_credentials(self, client):
        response = client.post("/hours-dashboard/backlog-items", json={"AZURE_PAT": "x"})
        assert response.status_code == 400
        assert "Missing required parameters" in response.get_json()["error"]

    def test_non_json_body(self, client):
        response = client.post("/hours-dashboard/backlog-items", data="nope", content_type="text/plain")
        assert response.status_code == 400

    def test_bad_date_format(self, client):
        response = post(client, "backlog-summaries", item_ids=[100], filter_startdate="01/03/2024")
        assert response.status_code == 400
        assert "YYYY-MM-DD" in response.get_json()["error"]

    def test_start_after_end(self, client):
        response = post(client, "backlog-summaries", item_ids=[100],
                        filter_startdate="2024-04-01", filter_enddate="2024-03-01")
        assert response.status_code == 400

    def test_bad_item_ids(self, client):
        response = post(client, "backlog-summaries", item_ids="100")
        assert response.status_code == 400


class TestEndpoints:

    def test_backlog_items(self, client):
        response = post(client, "backlog-items")
        data = response.get_json()

        assert response.status_code == 200
        assert [item["id"] for item in data["items"]] == [100]
        assert data["available_developers"] == ["Ana"]
        assert data["state_distribution"] == [{"state": "Active", "count": 1}]
        assert client.created_sessions[0].organization == "org"

    def test_backlog_summaries_without_window(self, client):
        data = post(client, "backlog-summaries", item_ids=[100]).get_json()

        assert data["summaries"] == {"100": {"estimated": 15, "invested": 5}}
        assert data["totals"]["projected"] == 20
        assert data["developers"][0]["developer"] == "Ana"
        assert data["tags"][0]["tag"] == "ClientA"

    def test_backlog_summaries_with_window(self, client):
        data = post(client, "backlog-summaries", item_ids=[100],
                    filter_startdate="2024-03-01", filter_enddate="2024-03-31").get_json()
        assert data["summaries"] == {"100": {"estimated": 10, "invested": 3}}

    def test_backlog_summaries_empty_selection(self, client, repository):
        data = post(client, "backlog-summaries", item_ids=[]).get_json()
        assert data["summaries"] == {}
        assert repository.link_calls == []

    def test_children_include_task_summaries(self, client):
        data = post(client, "children", item_id=100).get_json()

        assert sorted(item["id"] for item in data["items"]) == [101, 104]
        assert data["task_summaries"]["104"]["estimated"] == 5
        assert data["task_summaries"]["101"]["discrepancy"] is True

    def test_task_analysis(self, client):
        data = post(client, "task-analysis", developers=["Luis"]).get_json()

        assert sorted(task["id"] for task in data["tasks"]) == [104, 105]
        assert data["backlog_titles"] == {"104": "Billing revamp", "105": "Billing revamp"}
        assert data["metrics"]["total_tasks"] == 2
        assert data["available_developers"] == ["Ana", "Luis"]

    def test_comments(self, client):
        data = post(client, "comments", item_id=100).get_json()
        assert data["comments"][0]["created_by"] == "Ana"

    def test_forecast(self, client):
        response = client.post("/hours-dashboard/forecast", json={"pending_hours": 0, "weekly_load": 40})
        assert response.get_json() == {"end_date": None, "work_days": 0}

    def test_forecast_requires_numbers(self, client):
        response = client.post("/hours-dashboard/forecast", json={"pending_hours": "a lot", "weekly_load": 40})
        assert response.status_code == 400

    def test_backlog_forecast(self, client):
        data = post(client, "backlog-forecast").get_json()

        assert [row["id"] for row in data["items"]] == [100]
        row = data["items"][0]
        assert row["pending_hours"] == 16
        assert row["weekly_load"] == 40
        assert row["work_days"] == 2
        assert row["end_date"] is not None
        assert data["available_board_columns"] == ["Doing"]
        assert data["available_developers"] == ["Ana"]

    @pytest.mark.parametrize("filters", [
        {"developer": "Luis"},
        {"board_column": "Backlog"},
        {"search_term": "mobile"},
    ])
    def test_backlog_forecast_filters(self, client, filters):
        assert post(client, "backlog-forecast", **filters).get_json()["items"] == []

    def test_backlog_forecast_search_by_id(self, client):
        data = post(client, "backlog-forecast", developer="Ana", board_column="Doing", search_term="100").get_json()
        assert [row["id"] for row in data["items"]] == [100]

    def test_export_with_tasks_sheet(self, client):
        response = post(client, "export", item_ids=[100], include_tasks=True, developers=["Luis"])

        assert response.status_code == 200
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            workbook_xml = archive.read("xl/workbook.xml").decode()
            shared_strings = archive.read("xl/sharedStrings.xml").decode()
        assert "Tasks" in workbook_xml
        assert "UI forms" in shared_strings
        assert "Children Estimate" in shared_strings

    def test_export_without_tasks_sheet(self, client):
        response = post(client, "export", item_ids=[100])
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            assert "Tasks" not in archive.read("xl/workbook.xml").decode()

    def test_export(self, client):
        response = post(client, "export", item_ids=[100], output_file_name="march report!")

        assert response.status_code == 200
        assert "marchreport.xlsx" in response.headers["Content-Disposition"]
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            assert "Backlog Items" in archive.read("xl/workbook.xml").decode()


class TestErrorMapping:

    def test_authentication_error(self, client, repository, monkeypatch):
        def fail():
            raise AzureDevOpsAuthenticationError("401")

        monkeypatch.setattr(repository, "fetch_backlog_roots", fail)
        response = post(client, "backlog-items")
        assert response.status_code == 401
        assert response.get_json()["status"] == "unauthorized"

    def test_transport_error(self, client, repository, monkeypatch):
        def fail(item_id):
            raise requests.exceptions.ConnectionError("down")

        monkeypatch.setattr(repository, "fetch_comments", fail)
        response = post(client, "comments", item_id=1)
        assert response.status_code == 502

    def test_unexpected_error(self, client, repository, monkeypatch):
        def fail(item_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(repository, "fetch_direct_children", fail)
        response = post(client, "children", item_id=1)
        assert response.status_code == 500
        assert "boom" not in response.get_json()["error"]
