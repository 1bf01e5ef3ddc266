import requests
import base64
import json
import logging
from typing import List, Dict, Any, Optional, Iterable
import urllib.parse

from services.date_utils import parse_timestamp
from services.models import Comment, HierarchyLink, WorkItem, HIERARCHY_FORWARD, coerce_hours
from services.settings import DevOpsSession, Settings

logger = logging.getLogger(__name__)


class AzureDevOpsServiceError(Exception):
    """Azure DevOps answered with an error or with something that is not JSON"""
    pass


class AzureDevOpsAuthenticationError(AzureDevOpsServiceError):
    """Custom exception for Azure DevOps authentication errors"""
    pass


class AzureDevOpsService:
    """Work item repository backed by the Azure DevOps REST API"""

    def __init__(self, session: DevOpsSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or Settings(base_url=session.base_url)
        self.fields = self.settings.fields
        self.org_url = session.organization_url
        # URL-encode project name to handle spaces/special characters
        self.project_url = f"{self.org_url}/{urllib.parse.quote(session.project)}"
        encoded_pat = self._encode_pat(session.pat)
        self.headers = {
            "Authorization": f"Basic {encoded_pat}",
            "Content-Type": "application/json"
        }

    def _encode_pat(self, pat: str) -> str:
        """Encode the Personal Access Token for use in the Authorization header"""
        # Azure DevOps expects "username:pat" where username can be empty
        token = f":{pat}"
        return base64.b64encode(token.encode()).decode('utf-8')

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, payload: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        """
        Issue one request and decode the JSON body

        Returns:
            Decoded JSON, or None for an empty body

        Raises:
            AzureDevOpsAuthenticationError: On HTTP 401
            AzureDevOpsServiceError: On any other error status or a body that is not JSON
            requests.exceptions.RequestException: On connection problems
        """
        logger.debug(f"{method} {url}")
        response = requests.request(
            method,
            url,
            headers=self.headers,
            json=payload,
            timeout=self.settings.timeout
        )

        if response.status_code == 401:
            logger.error("Azure DevOps authentication failed - Invalid PAT token")
            raise AzureDevOpsAuthenticationError(
                "Authentication failed (401). Please check your Personal Access Token, it may be invalid or expired."
            )

        body = response.text
        if not response.ok:
            error_msg = self._describe_error(response.status_code, response.reason, body)
            logger.error(f"Azure DevOps API error for {method} {url}: {error_msg}")
            raise AzureDevOpsServiceError(error_msg)

        if not body:
            return None

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            logger.error(f"Failed to parse Azure DevOps response: {body[:500]}")
            if body.strip().lower().startswith('<!doctype html>'):
                raise AzureDevOpsServiceError(
                    "Received an HTML page instead of JSON. The organization/project URL may be wrong "
                    "or the request was redirected to a sign-in page."
                )
            raise AzureDevOpsServiceError("Failed to parse Azure DevOps response. Please check your credentials and try again.")

    def _describe_error(self, status_code: int, reason: str, body: str) -> str:
        if not body:
            return f"API error: {status_code} {reason}"
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            if body.strip().lower().startswith('<!doctype html>'):
                return (f"Unexpected HTML error response (status {status_code}). This can be caused by an "
                        "invalid or expired PAT, missing permissions or a wrong URL.")
            return f"API error: {status_code} {reason}. The response was not JSON."
        if isinstance(data, dict):
            return data.get("message") or f"API error: {status_code} - {data.get('typeName', 'Unknown error')}"
        return f"API error: {status_code} {reason}"

    def _run_wiql(self, query: str) -> Dict[str, Any]:
        url = f"{self.project_url}/_apis/wit/wiql?api-version={self.settings.wiql_api_version}"
        logger.debug(f"Executing WIQL query: {query}")
        return self._request("POST", url, {"query": query}) or {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _quote(self, value: str) -> str:
        # Escape single quotes by doubling them
        return "'" + value.replace("'", "''") + "'"

    def _fetch_items_of_type(self, work_item_type: str) -> List[WorkItem]:
        query = (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.TeamProject] = @project "
            f"AND [System.WorkItemType] = {self._quote(work_item_type)} "
            "ORDER BY [System.Id] DESC"
        )
        data = self._run_wiql(query)
        work_item_ids = [item["id"] for item in data.get("workItems", [])]

        if not work_item_ids:
            logger.info(f"No {work_item_type} work items found")
            return []

        return self.fetch_details(work_item_ids)

    def fetch_backlog_roots(self) -> List[WorkItem]:
        """Fetch every top-level backlog item of the project, with relations"""
        items = self._fetch_items_of_type(self.fields.backlog_item_type)
        logger.info(f"Found {len(items)} {self.fields.backlog_item_type} work items")
        return items

    def fetch_all_tasks(self) -> List[WorkItem]:
        """Fetch every Task of the project, with relations"""
        items = self._fetch_items_of_type(self.fields.task_type)
        logger.info(f"Found {len(items)} {self.fields.task_type} work items")
        return items

    def fetch_descendant_links(self, root_ids: Iterable[int], target_types: Iterable[str],
                               recursive: bool = True) -> List[HierarchyLink]:
        """
        Get Hierarchy-Forward links below the given roots

        Args:
            root_ids: Source work item IDs
            target_types: Work item types the link targets must have
            recursive: Follow links transitively instead of only direct children

        Returns:
            Links in no particular order; a target can appear more than once
        """
        root_ids = list(dict.fromkeys(root_ids))
        if not root_ids:
            return []

        type_list = ", ".join(self._quote(t) for t in target_types)
        clauses = [
            f"[Source].[System.Id] IN ({', '.join(str(i) for i in root_ids)})",
            f"[System.Links.LinkType] = '{HIERARCHY_FORWARD}'",
        ]
        if type_list:
            clauses.append(f"[Target].[System.WorkItemType] IN ({type_list})")
        mode = "Recursive" if recursive else "MustContain"
        query = (
            "SELECT [System.Id] FROM WorkItemLinks WHERE "
            + " AND ".join(clauses)
            + f" MODE ({mode})"
        )

        data = self._run_wiql(query)

        links = []
        for relation in data.get("workItemRelations", []) or []:
            # Entries without a source are the roots themselves, not edges
            source = relation.get("source")
            target = relation.get("target")
            if not source or not target or not target.get("id"):
                continue
            links.append(HierarchyLink(source_id=source["id"], target_id=target["id"]))

        logger.debug(f"Found {len(links)} hierarchy links below {len(root_ids)} roots")
        return links

    def fetch_direct_children(self, parent_id: int) -> List[WorkItem]:
        """Get the direct children of a work item, with relations expanded"""
        links = self.fetch_descendant_links([parent_id], [], recursive=False)
        child_ids = [link.target_id for link in links if link.source_id == parent_id]
        return self.fetch_details(child_ids)

    def fetch_details(self, ids: Iterable[int], fields: Optional[Iterable[str]] = None) -> List[WorkItem]:
        """
        Get detailed information for multiple work items

        Args:
            ids: Work item IDs, duplicates are dropped
            fields: Logical field names to load; relations are only loaded when omitted

        Returns:
            Work items in the order the API returns them
        """
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return []

        wire_fields = None
        if fields is not None:
            mapping = self.fields.wire_fields()
            wire_fields = list(dict.fromkeys(mapping.get(name, name) for name in fields))

        # Batch requests (Azure DevOps allows at most 200 IDs per call)
        batch_size = self.settings.batch_size
        all_items = []

        for i in range(0, len(unique_ids), batch_size):
            batch_ids = unique_ids[i:i + batch_size]
            ids_string = ",".join(map(str, batch_ids))

            url = f"{self.org_url}/_apis/wit/workitems?ids={ids_string}"
            if wire_fields:
                url += f"&fields={','.join(wire_fields)}"
            else:
                url += "&$expand=relations"
            url += f"&api-version={self.settings.api_version}"

            batch_data = self._request("GET", url) or {}
            logger.debug(f"Work item batch returned {len(batch_data.get('value', []))} items")
            all_items.extend(batch_data.get("value", []))

        return [self._transform_work_item(item) for item in all_items]

    def fetch_comments(self, item_id: int) -> List[Comment]:
        """Get the discussion comments of one work item"""
        url = (f"{self.project_url}/_apis/wit/workitems/{item_id}/comments"
               f"?$expand=renderedText&api-version={self.settings.api_version}")
        data = self._request("GET", url) or {}

        comments = []
        for raw in data.get("comments", []):
            created_by = raw.get("createdBy") or {}
            comments.append(Comment(
                id=raw.get("id"),
                text=raw.get("text", ""),
                rendered_text=raw.get("renderedText"),
                author=created_by.get("displayName", ""),
                created_date=parse_timestamp(raw.get("createdDate")),
            ))
        return comments

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _transform_work_item(self, work_item: Dict[str, Any]) -> WorkItem:
        """
        Transform a work item response into a WorkItem
        """
        fields = work_item.get("fields", {}) or {}
        mapping = self.fields.wire_fields()

        assigned_to = fields.get(mapping["assignee"])
        if isinstance(assigned_to, dict):
            assignee = assigned_to.get("displayName") or None
        else:
            assignee = assigned_to or None

        raw_tags = fields.get(mapping["tags"]) or ""
        tags = frozenset(tag.strip() for tag in raw_tags.split(";") if tag.strip())

        parent_id = fields.get(mapping["parent_id"])
        if isinstance(parent_id, bool) or not isinstance(parent_id, int) or parent_id <= 0:
            parent_id = None

        child_ids = []
        for relation in work_item.get("relations") or []:
            if relation.get("rel") != HIERARCHY_FORWARD:
                continue
            child_id = self._id_from_url(relation.get("url", ""))
            if child_id is not None:
                child_ids.append(child_id)

        # Presentation-only fields, custom fields are stored by their simple name
        attributes = {}
        for field_name, field_value in fields.items():
            if field_name.startswith("Custom."):
                attributes[field_name.split('.')[-1]] = field_value
        attributes["projected_hours"] = coerce_hours(fields.get(self.fields.projected_field)) or 0
        attributes["pending_hours"] = coerce_hours(fields.get(self.fields.pending_field)) or 0
        attributes["weekly_load"] = coerce_hours(fields.get(self.fields.weekly_load_field)) or 0
        if "System.BoardColumn" in fields:
            attributes["board_column"] = fields["System.BoardColumn"]

        return WorkItem(
            id=work_item.get("id"),
            type=fields.get(mapping["type"], "") or "",
            title=fields.get(mapping["title"], "") or "",
            state=fields.get(mapping["state"], "") or "",
            assignee=assignee,
            tags=tags,
            parent_id=parent_id,
            own_estimated_hours=coerce_hours(fields.get(mapping["own_estimated_hours"])),
            invested_hours=coerce_hours(fields.get(mapping["invested_hours"])),
            occurrence_date=parse_timestamp(fields.get(mapping["occurrence_date"])),
            created_date=parse_timestamp(fields.get(mapping["created_date"])),
            child_ids=tuple(dict.fromkeys(child_ids)),
            url=work_item.get("url", "") or "",
            attributes=attributes,
        )

    def _id_from_url(self, url: str) -> Optional[int]:
        tail = url.rstrip("/").rsplit("/", 1)[-1]
        try:
            return int(tail)
        except ValueError:
            return None
