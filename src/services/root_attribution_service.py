import logging
from typing import Dict, Iterable, Mapping, Optional

from services.models import WorkItem

logger = logging.getLogger(__name__)

DEFAULT_TOP_LEVEL_TYPE = "Product Backlog Item"


def find_owning_root(item_id: int, items_by_id: Mapping[int, WorkItem],
                     top_level_type: str = DEFAULT_TOP_LEVEL_TYPE,
                     memo: Optional[Dict[int, Optional[WorkItem]]] = None) -> Optional[WorkItem]:
    """
    Walk parent links upward until a top-level item is found

    Every ID visited on the way is recorded in memo, so items sharing ancestors
    are resolved without walking the same chain twice.

    Args:
        item_id: Item to start from
        items_by_id: Every item that can appear as an ancestor
        top_level_type: Work item type that owns the hierarchy
        memo: Results shared across a batch

    Returns:
        The owning top-level item, or None when the chain ends without one,
        leaves items_by_id, or loops back on itself
    """
    if memo is None:
        memo = {}
    if item_id in memo:
        return memo[item_id]

    chain = []
    on_chain = set()
    root = None
    current = item_id

    while True:
        if current in memo:
            root = memo[current]
            break
        if current in on_chain:
            logger.warning(f"Parent cycle detected at work item {current} while resolving {item_id}")
            break
        on_chain.add(current)
        chain.append(current)

        item = items_by_id.get(current)
        if item is None:
            break
        if item.is_type(top_level_type):
            root = item
            break
        if not item.parent_id:
            break
        current = item.parent_id

    for visited_id in chain:
        memo[visited_id] = root
    return root


class RootAttributionResolver:
    """Resolves owning roots for a batch of items with one shared memo"""

    def __init__(self, items_by_id: Mapping[int, WorkItem], top_level_type: str = DEFAULT_TOP_LEVEL_TYPE):
        self.items_by_id = items_by_id
        self.top_level_type = top_level_type
        self._memo: Dict[int, Optional[WorkItem]] = {}

    def resolve(self, item_id: int) -> Optional[WorkItem]:
        return find_owning_root(item_id, self.items_by_id, self.top_level_type, self._memo)

    def resolve_many(self, item_ids: Iterable[int]) -> Dict[int, Optional[WorkItem]]:
        return {item_id: self.resolve(item_id) for item_id in item_ids}


def owning_root_titles(items: Iterable[WorkItem], roots: Iterable[WorkItem],
                       top_level_type: str = DEFAULT_TOP_LEVEL_TYPE) -> Dict[int, str]:
    """Map each item ID to the title of its owning top-level item, skipping unresolved ones"""
    items = list(items)
    items_by_id = {item.id: item for item in items}
    for root in roots:
        items_by_id[root.id] = root

    resolver = RootAttributionResolver(items_by_id, top_level_type)
    owning_roots = resolver.resolve_many(item.id for item in items)
    return {item_id: root.title for item_id, root in owning_roots.items() if root is not None}
