from flask import Flask, request, jsonify, send_file
import io
import logging
from datetime import datetime
from services.azure_devops_service import AzureDevOpsService, AzureDevOpsAuthenticationError, AzureDevOpsServiceError
from services.hour_aggregation_service import HourAggregationService
from services.report_service import ReportService
from services.logging_service import setup_logging
from services.settings import load_settings
from services.models import DateWindow
from services.date_utils import parse_date_param, calculate_projected_end_date
from services.root_attribution_service import owning_root_titles
from services import dashboard_metrics_service as metrics
from flasgger import Swagger
import requests

settings = load_settings()

# Configure logging
logger = setup_logging(log_level=settings.log_level)

# Initialize Flask app
app = Flask(__name__)

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/hours-dashboard/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/hours-dashboard/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/hours-dashboard/docs"
}

swagger_template = {
    "info": {
        "title": "Azure DevOps Hours Dashboard API",
        "description": "Estimated vs. invested hours of Azure DevOps backlog items and tasks",
        "version": "1.0",
        "contact": {
            "name": "API Support"
        }
    }
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)


class RequestValidationError(ValueError):
    """A request body failed validation; answered with HTTP 400"""
    pass


@app.route('/health', methods=['GET'])
@app.route('/hours-dashboard/health', methods=['GET'])
def health_check():
    """
    Health check endpoint
    ---
    responses:
      200:
        description: Service is healthy
    """
    return jsonify({"status": "healthy"}), 200


# ------------------------------------------------------------------
# Request helpers
# ------------------------------------------------------------------

def _get_json() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise RequestValidationError("Request body must be a JSON object.")
    return data


def _create_repository(data: dict) -> AzureDevOpsService:
    azure_pat = data.get('AZURE_PAT')
    organization = data.get('ORGANIZATION')
    project = data.get('PROJECT')
    if not all([azure_pat, organization, project]):
        raise RequestValidationError(
            "Missing required parameters. Please provide AZURE_PAT, ORGANIZATION, and PROJECT."
        )
    return AzureDevOpsService(settings.session(azure_pat, organization, project), settings)


def _create_aggregation(repository) -> HourAggregationService:
    return HourAggregationService(repository, settings.fields, settings.summary_max_workers)


def _validate_date_parameters(data: dict) -> DateWindow:
    """
    Build the date window from filter_startdate / filter_enddate

    Returns:
        DateWindow, unbounded when neither date is given
    """
    try:
        start = parse_date_param(data.get('filter_startdate'))
        end = parse_date_param(data.get('filter_enddate'))
    except (TypeError, ValueError):
        raise RequestValidationError("Invalid date format. Please use YYYY-MM-DD format.")

    if start and end and start > end:
        raise RequestValidationError("filter_startdate must be before or equal to filter_enddate.")

    return DateWindow(start=start, end=end)


def _parse_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise RequestValidationError(f"{name} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RequestValidationError(f"{name} must be an integer.")


def _parse_int_list(value, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RequestValidationError(f"{name} must be a list of integers.")
    return [_parse_int(v, name) for v in value]


def _parse_number(value, name: str) -> float:
    if isinstance(value, bool):
        raise RequestValidationError(f"{name} must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RequestValidationError(f"{name} must be a number.")


def _string_list(value, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RequestValidationError(f"{name} must be a list of strings.")
    return value


def _summaries_to_json(summaries: dict) -> dict:
    return {str(item_id): summary.to_dict() for item_id, summary in summaries.items()}


def _error_response(e: Exception, action: str):
    """Map an exception to the JSON error response"""
    if isinstance(e, RequestValidationError):
        logger.error(f"Validation error: {e}")
        return jsonify({"error": str(e)}), 400
    if isinstance(e, AzureDevOpsAuthenticationError):
        logger.error("Authentication failed with Azure DevOps")
        return jsonify({
            "error": "Invalid Azure DevOps PAT token. Please check your credentials.",
            "status": "unauthorized"
        }), 401
    if isinstance(e, (AzureDevOpsServiceError, requests.exceptions.RequestException)):
        logger.error(f"Azure DevOps request failed while {action}: {e}")
        return jsonify({
            "error": f"Failed to connect to Azure DevOps: {e}",
            "status": "error"
        }), 502

    logger.exception(f"Error {action}")
    return jsonify({
        "error": f"An error occurred while {action}. Please try again.",
        "status": "error"
    }), 500


def _backlog_summary_data(data: dict):
    """Fetch the selected backlog items and summarize each one in the date window"""
    repository = _create_repository(data)
    item_ids = _parse_int_list(data.get('item_ids'), 'item_ids')
    date_window = _validate_date_parameters(data)

    if not item_ids:
        return [], {}

    items = repository.fetch_details(item_ids)
    logger.info(f"Summarizing hours of {len(items)} backlog items")
    summaries = _create_aggregation(repository).summarize_roots(item_ids, date_window)
    return items, summaries


def _task_analysis_data(repository, data: dict):
    """
    Fetch tasks, filter them by developers and tag, and resolve their summaries

    Returns:
        Tuple of (all tasks, tasks of the selected developers, filtered tasks,
        summaries of the filtered tasks, owning backlog title per task ID)
    """
    developers = _string_list(data.get('developers'), 'developers')
    tag = data.get('tag') or None

    all_tasks = repository.fetch_all_tasks()
    roots = repository.fetch_backlog_roots()
    tasks_of_devs = metrics.filter_tasks(all_tasks, developers=developers)
    tasks = metrics.filter_tasks(tasks_of_devs, tag=tag)

    summaries = _create_aggregation(repository).resolve_task_summaries(tasks)
    titles = owning_root_titles(all_tasks, roots, settings.fields.backlog_item_type)
    return all_tasks, tasks_of_devs, tasks, summaries, titles


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@app.route('/hours-dashboard/backlog-items', methods=['POST'])
def backlog_items_api():
    """
    List the project's backlog items with dashboard filters
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
          properties:
            AZURE_PAT:
              type: string
              description: Azure DevOps Personal Access Token
            ORGANIZATION:
              type: string
              description: Azure DevOps Organization name
            PROJECT:
              type: string
              description: Azure DevOps Project name
            developers:
              type: array
              items:
                type: string
            item_ids:
              type: array
              items:
                type: integer
            states:
              type: array
              items:
                type: string
            tags:
              type: array
              items:
                type: string
            search_term:
              type: string
            include_completed:
              type: boolean
              default: false
    responses:
      200:
        description: Backlog items and the values available for filtering
      400:
        description: Bad request - missing required parameters
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        repository = _create_repository(data)
        developers = _string_list(data.get('developers'), 'developers')
        item_ids = _parse_int_list(data.get('item_ids'), 'item_ids')
        states = _string_list(data.get('states'), 'states')
        tags = _string_list(data.get('tags'), 'tags')

        roots = repository.fetch_backlog_roots()
        roots.sort(key=lambda item: item.id, reverse=True)

        visible = metrics.filter_backlog_items(roots, include_completed=bool(data.get('include_completed')))
        filtered = metrics.filter_backlog_items(
            visible,
            developers=developers,
            item_ids=item_ids,
            states=states,
            tags=tags,
            search_term=data.get('search_term') or "",
            include_completed=True,
        )

        return jsonify({
            "items": [item.to_dict() for item in filtered],
            "available_developers": metrics.available_developers(visible),
            "available_states": metrics.available_states(filtered),
            "available_tags": metrics.available_tags(filtered),
            "state_distribution": metrics.state_distribution(filtered),
        }), 200

    except Exception as e:
        return _error_response(e, "fetching backlog items")


@app.route('/hours-dashboard/backlog-summaries', methods=['POST'])
def backlog_summaries_api():
    """
    Estimated and invested hours of selected backlog items
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
            - item_ids
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            item_ids:
              type: array
              description: Backlog item IDs to summarize
              items:
                type: integer
            filter_startdate:
              type: string
              description: Optional start date (YYYY-MM-DD); line entries and tasks dated on or after it
            filter_enddate:
              type: string
              description: Optional end date (YYYY-MM-DD), inclusive of the whole day
    responses:
      200:
        description: Summaries per item, totals, per developer and per tag
      400:
        description: Bad request
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        items, summaries = _backlog_summary_data(data)

        return jsonify({
            "summaries": _summaries_to_json(summaries),
            "totals": metrics.summarize_totals(items, summaries),
            "developers": metrics.summarize_by_developer(items, summaries),
            "tags": metrics.summarize_by_tag(items, summaries),
        }), 200

    except Exception as e:
        return _error_response(e, "summarizing backlog items")


@app.route('/hours-dashboard/children', methods=['POST'])
def children_api():
    """
    Direct children of a work item, with discrepancy summaries for tasks
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
            - item_id
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            item_id:
              type: integer
    responses:
      200:
        description: Children and task summaries keyed by task ID
      400:
        description: Bad request
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        repository = _create_repository(data)
        item_id = _parse_int(data.get('item_id'), 'item_id')

        children = repository.fetch_direct_children(item_id)
        tasks = [child for child in children if child.is_type(settings.fields.task_type)]
        task_summaries = _create_aggregation(repository).resolve_task_summaries(tasks)

        return jsonify({
            "items": [child.to_dict() for child in children],
            "task_summaries": _summaries_to_json(task_summaries),
        }), 200

    except Exception as e:
        return _error_response(e, "fetching child work items")


@app.route('/hours-dashboard/task-analysis', methods=['POST'])
def task_analysis_api():
    """
    Invested hours of tasks by developer and tag
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            developers:
              type: array
              items:
                type: string
            tag:
              type: string
    responses:
      200:
        description: Filtered tasks, their summaries, owning backlog item titles and metrics
      400:
        description: Bad request
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        repository = _create_repository(data)
        all_tasks, tasks_of_devs, tasks, summaries, titles = _task_analysis_data(repository, data)

        return jsonify({
            "tasks": [task.to_dict() for task in tasks],
            "task_summaries": _summaries_to_json(summaries),
            "backlog_titles": {str(task.id): titles[task.id] for task in tasks if task.id in titles},
            "available_developers": metrics.available_developers(all_tasks),
            "available_tags": metrics.available_tags(tasks_of_devs),
            "metrics": metrics.task_analysis_metrics(tasks, summaries),
        }), 200

    except Exception as e:
        return _error_response(e, "analysing tasks")


@app.route('/hours-dashboard/comments', methods=['POST'])
def comments_api():
    """
    Comments of a work item
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
            - item_id
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            item_id:
              type: integer
    responses:
      200:
        description: Comments, newest as returned by Azure DevOps
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        repository = _create_repository(data)
        item_id = _parse_int(data.get('item_id'), 'item_id')
        comments = repository.fetch_comments(item_id)
        return jsonify({"comments": [comment.to_dict() for comment in comments]}), 200

    except Exception as e:
        return _error_response(e, "fetching comments")


@app.route('/hours-dashboard/forecast', methods=['POST'])
def forecast_api():
    """
    Project the end date of pending work
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - pending_hours
            - weekly_load
          properties:
            pending_hours:
              type: number
            weekly_load:
              type: number
              description: Hours per week, spread over five business days
    responses:
      200:
        description: Projected end date (null when it cannot be projected) and business days needed
      400:
        description: Bad request
    """
    try:
        data = _get_json()
        pending_hours = _parse_number(data.get('pending_hours'), 'pending_hours')
        weekly_load = _parse_number(data.get('weekly_load'), 'weekly_load')

        end_date, work_days = calculate_projected_end_date(pending_hours, weekly_load)
        return jsonify({
            "end_date": end_date.isoformat() if end_date else None,
            "work_days": work_days,
        }), 200

    except Exception as e:
        return _error_response(e, "projecting the end date")


@app.route('/hours-dashboard/backlog-forecast', methods=['POST'])
def backlog_forecast_api():
    """
    Projected end date of each backlog item from its pending hours and weekly load
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            developer:
              type: string
            search_term:
              type: string
              description: Matches the item ID or title
            board_column:
              type: string
    responses:
      200:
        description: Forecast per backlog item and the developers and board columns available for filtering
      400:
        description: Bad request
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        repository = _create_repository(data)

        roots = repository.fetch_backlog_roots()
        roots.sort(key=lambda item: item.id, reverse=True)
        filtered = metrics.filter_forecast_items(
            roots,
            developer=data.get('developer') or None,
            search_term=data.get('search_term') or "",
            board_column=data.get('board_column') or None,
        )

        return jsonify({
            "items": metrics.forecast_items(filtered),
            "available_developers": metrics.available_developers(roots),
            "available_board_columns": metrics.available_board_columns(roots),
        }), 200

    except Exception as e:
        return _error_response(e, "forecasting backlog items")


@app.route('/hours-dashboard/export', methods=['POST'])
def export_api():
    """
    Export backlog item hour summaries as an Excel workbook
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
            - item_ids
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            item_ids:
              type: array
              items:
                type: integer
            filter_startdate:
              type: string
            filter_enddate:
              type: string
            output_file_name:
              type: string
              description: Optional custom filename for the report (without extension)
            include_tasks:
              type: boolean
              default: false
              description: Add a Tasks sheet with task discrepancy summaries
            developers:
              type: array
              description: Task filter for the Tasks sheet
              items:
                type: string
            tag:
              type: string
              description: Task filter for the Tasks sheet
    responses:
      200:
        description: The .xlsx report
      400:
        description: Bad request
      401:
        description: Invalid PAT
    """
    try:
        data = _get_json()
        items, summaries = _backlog_summary_data(data)
        report_service = ReportService()

        task_rows = None
        if data.get('include_tasks'):
            _, _, tasks, task_summaries, titles = _task_analysis_data(_create_repository(data), data)
            task_rows = report_service.task_rows(tasks, task_summaries, titles)

        output = io.BytesIO()
        report_service.build_excel_workbook(
            output,
            report_service.backlog_rows(items, summaries),
            metrics.summarize_by_developer(items, summaries),
            metrics.summarize_totals(items, summaries),
            task_rows=task_rows,
        )
        output.seek(0)

        output_file_name = data.get('output_file_name')
        if output_file_name:
            # Ensure the filename is safe by removing any problematic characters
            safe_filename = ''.join(c for c in output_file_name if c.isalnum() or c in ['-', '_', '.'])
            file_name = f"{safe_filename or 'hours_report'}.xlsx"
        else:
            file_name = f"hours_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"

        logger.info(f"Export {file_name} generated with {len(items)} backlog items")
        return send_file(
            output,
            mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            as_attachment=True,
            download_name=file_name
        )

    except Exception as e:
        return _error_response(e, "exporting the report")


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=settings.port, debug=False)
