"""Shared fixtures: an in-memory work item repository and a sample hierarchy."""

import dataclasses
import threading
from datetime import datetime, timezone

import pytest

from services.models import Comment, HierarchyLink, WorkItem


def ts(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


def build_items(*items: WorkItem) -> dict:
    """Index items by ID and fill child_ids from the parent links"""
    children = {}
    for item in items:
        if item.parent_id:
            children.setdefault(item.parent_id, []).append(item.id)
    return {
        item.id: dataclasses.replace(item, child_ids=tuple(children.get(item.id, ())))
        for item in items
    }


class FakeRepository:
    """In-memory stand-in for AzureDevOpsService"""

    def __init__(self, items: dict, duplicate_links: bool = False, failing_roots=()):
        self.items = items
        self.duplicate_links = duplicate_links
        self.failing_roots = set(failing_roots)
        self.comments = {}
        self.link_calls = []
        self.detail_calls = []
        self._lock = threading.Lock()

    def _children(self, parent_id):
        return [item for item in self.items.values() if item.parent_id == parent_id]

    def fetch_descendant_links(self, root_ids, target_types, recursive=True):
        root_ids = list(root_ids)
        with self._lock:
            self.link_calls.append((root_ids, list(target_types), recursive))
        if self.failing_roots & set(root_ids):
            raise ConnectionError(f"lookup failed for {root_ids}")

        wanted = {t.lower() for t in target_types}
        links = []
        pending = list(root_ids)
        seen = set()
        while pending:
            parent_id = pending.pop()
            if parent_id in seen:
                continue
            seen.add(parent_id)
            for child in self._children(parent_id):
                if not wanted or child.type.lower() in wanted:
                    links.append(HierarchyLink(parent_id, child.id))
                    if self.duplicate_links:
                        links.append(HierarchyLink(parent_id, child.id))
                if recursive:
                    pending.append(child.id)
        return links

    def fetch_details(self, ids, fields=None):
        ids = list(ids)
        with self._lock:
            self.detail_calls.append((ids, fields))
        return [self.items[i] for i in ids if i in self.items]

    def fetch_backlog_roots(self):
        return [item for item in self.items.values() if item.type == "Product Backlog Item"]

    def fetch_all_tasks(self):
        return [item for item in self.items.values() if item.type == "Task"]

    def fetch_direct_children(self, parent_id):
        return self._children(parent_id)

    def fetch_comments(self, item_id):
        return self.comments.get(item_id, [])


@pytest.fixture
def hierarchy():
    """
    #100 backlog item
      #101 Task (10h) -> #102 Linea 3h on 2024-03-10, #103 Linea 2h on 2024-01-05
      #104 Task (0h)  -> #105 Task (5h)
    All tasks were created in 2023.
    """
    return build_items(
        WorkItem(id=100, type="Product Backlog Item", title="Billing revamp", state="Active",
                 assignee="Ana", tags=frozenset({"ClientA"}), created_date=ts("2023-01-01T08:00:00"),
                 attributes={"projected_hours": 20, "pending_hours": 16, "weekly_load": 40,
                             "board_column": "Doing"}),
        WorkItem(id=101, type="Task", title="API", state="Active", assignee="Ana", parent_id=100,
                 own_estimated_hours=10, created_date=ts("2023-02-01T08:00:00")),
        WorkItem(id=102, type="Linea", parent_id=101, invested_hours=3,
                 occurrence_date=ts("2024-03-10T10:00:00"), created_date=ts("2024-03-10T10:00:00")),
        WorkItem(id=103, type="Linea", parent_id=101, invested_hours=2,
                 occurrence_date=ts("2024-01-05T10:00:00"), created_date=ts("2024-01-05T10:00:00")),
        WorkItem(id=104, type="Task", title="UI", state="New", assignee="Luis", parent_id=100,
                 own_estimated_hours=0, created_date=ts("2023-02-01T08:00:00")),
        WorkItem(id=105, type="Task", title="UI forms", state="New", assignee="Luis", parent_id=104,
                 own_estimated_hours=5, created_date=ts("2023-02-02T08:00:00")),
    )


@pytest.fixture
def repository(hierarchy):
    repo = FakeRepository(hierarchy)
    repo.comments[100] = [Comment(id=1, text="Kickoff done", author="Ana", created_date=ts("2024-01-02T09:00:00"))]
    return repo
