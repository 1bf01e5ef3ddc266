import os
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class FieldMapping:
    """Work item types and field reference names used by the hour engine"""
    backlog_item_type: str = "Product Backlog Item"
    task_type: str = "Task"
    line_entry_type: str = "Linea"
    estimate_field: str = "Custom.Horasestimadasdetarea"
    invested_field: str = "Custom.Horas"
    line_date_field: str = "Custom.Fechalinea"
    projected_field: str = "Custom.HorasPropuesta"
    pending_field: str = "Custom.Hspendientes"
    weekly_load_field: str = "Custom.Cargasemanal"

    def wire_fields(self) -> Dict[str, str]:
        """Map logical field names to Azure DevOps field reference names"""
        return {
            "id": "System.Id",
            "type": "System.WorkItemType",
            "title": "System.Title",
            "state": "System.State",
            "assignee": "System.AssignedTo",
            "tags": "System.Tags",
            "parent_id": "System.Parent",
            "created_date": "System.CreatedDate",
            "own_estimated_hours": self.estimate_field,
            "invested_hours": self.invested_field,
            "occurrence_date": self.line_date_field,
        }


@dataclass(frozen=True)
class DevOpsSession:
    """Credentials for one organization/project, created per authenticated request"""
    pat: str
    organization: str
    project: str
    base_url: str = "https://dev.azure.com"

    @property
    def organization_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.organization}"


@dataclass(frozen=True)
class Settings:
    base_url: str = "https://dev.azure.com"
    api_version: str = "7.1-preview.3"
    wiql_api_version: str = "7.1-preview.2"
    batch_size: int = 200
    timeout: float = 30.0
    summary_max_workers: int = 8
    log_level: str = "INFO"
    port: int = 5000
    fields: FieldMapping = FieldMapping()

    def session(self, pat: str, organization: str, project: str) -> DevOpsSession:
        return DevOpsSession(pat=pat, organization=organization, project=project, base_url=self.base_url)


def _env_int(environ, name: str, default: int) -> int:
    value = environ.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{value}'")


def _env_float(environ, name: str, default: float) -> float:
    value = environ.get(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got '{value}'")


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build settings from environment variables

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        Settings with defaults for anything not set
    """
    if environ is None:
        environ = os.environ

    defaults = FieldMapping()
    fields = FieldMapping(
        backlog_item_type=environ.get("BACKLOG_ITEM_TYPE", defaults.backlog_item_type),
        task_type=environ.get("TASK_TYPE", defaults.task_type),
        line_entry_type=environ.get("LINE_ENTRY_TYPE", defaults.line_entry_type),
        estimate_field=environ.get("ESTIMATE_FIELD", defaults.estimate_field),
        invested_field=environ.get("INVESTED_FIELD", defaults.invested_field),
        line_date_field=environ.get("LINE_DATE_FIELD", defaults.line_date_field),
        projected_field=environ.get("PROJECTED_FIELD", defaults.projected_field),
        pending_field=environ.get("PENDING_FIELD", defaults.pending_field),
        weekly_load_field=environ.get("WEEKLY_LOAD_FIELD", defaults.weekly_load_field),
    )

    batch_size = _env_int(environ, "AZURE_DEVOPS_BATCH_SIZE", 200)
    if not 1 <= batch_size <= 200:
        raise ValueError("AZURE_DEVOPS_BATCH_SIZE must be between 1 and 200")

    max_workers = _env_int(environ, "SUMMARY_MAX_WORKERS", 8)
    if max_workers < 1:
        raise ValueError("SUMMARY_MAX_WORKERS must be at least 1")

    return Settings(
        base_url=environ.get("AZURE_DEVOPS_BASE_URL", "https://dev.azure.com"),
        api_version=environ.get("AZURE_DEVOPS_API_VERSION", "7.1-preview.3"),
        wiql_api_version=environ.get("AZURE_DEVOPS_WIQL_API_VERSION", "7.1-preview.2"),
        batch_size=batch_size,
        timeout=_env_float(environ, "AZURE_DEVOPS_TIMEOUT", 30.0),
        summary_max_workers=max_workers,
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        port=_env_int(environ, "PORT", 5000),
        fields=fields,
    )
