"""Dependency ordering of staged local changes before they are pushed."""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from graphlib import TopologicalSorter
from typing import Any, Sequence

import structlog

from wallabag_sync.models.entities import (
    AnnotationRow,
    EntityKind,
    EntryRow,
    NewAnnotation,
    NewTagLink,
    NewUrl,
    TagRemoval,
)

log = structlog.stdlib.get_logger()


class PushOp(str, Enum):
    """Remote operation a push item performs."""

    DELETE_TAG = "delete_tag"
    DELETE_ENTRY = "delete_entry"
    DELETE_ANNOTATION = "delete_annotation"
    CREATE_ENTRY = "create_entry"
    UPDATE_ENTRY = "update_entry"
    ADD_TAGS = "add_tags"
    REMOVE_TAGS = "remove_tags"
    CREATE_ANNOTATION = "create_annotation"
    UPDATE_ANNOTATION = "update_annotation"


OP_KINDS = {
    PushOp.DELETE_TAG: EntityKind.TAG,
    PushOp.DELETE_ENTRY: EntityKind.ENTRY,
    PushOp.DELETE_ANNOTATION: EntityKind.ANNOTATION,
    PushOp.CREATE_ENTRY: EntityKind.ENTRY,
    PushOp.UPDATE_ENTRY: EntityKind.ENTRY,
    PushOp.ADD_TAGS: EntityKind.TAG,
    PushOp.REMOVE_TAGS: EntityKind.TAG,
    PushOp.CREATE_ANNOTATION: EntityKind.ANNOTATION,
    PushOp.UPDATE_ANNOTATION: EntityKind.ANNOTATION,
}


@dataclass(frozen=True)
class PushItem:
    """One node of the push graph.

    ``target`` names what the node acts on: ``("new_url", staging_id)`` for a
    staged entry, ``("entry", server_id)`` for a cached one, and so on.
    ``record`` carries the staged data and is not part of the identity.
    """

    op: PushOp
    target: tuple[str, int]
    record: Any = field(default=None, compare=False, hash=False)

    @property
    def kind(self) -> EntityKind:
        return OP_KINDS[self.op]

    @property
    def local_id(self) -> int | None:
        return self.target[1] if self.target[0] in ("new_url", "new_annotation") else None

    @property
    def server_id(self) -> int | None:
        return None if self.local_id is not None else self.target[1]


class PushPlan:
    """Directed acyclic graph of push items.

    An edge ``a -> b`` means ``b`` may only run once ``a`` succeeded: staged
    entries are created before the annotations and labels that point at them,
    field updates of an entry run before its tag changes, and staged tag
    deletions run before any labels are added.
    """

    def __init__(self) -> None:
        self._graph: dict[PushItem, set[PushItem]] = {}

    def add(self, item: PushItem, *requires: PushItem | None) -> None:
        deps = self._graph.setdefault(item, set())
        deps.update(dep for dep in requires if dep is not None)

    @property
    def items(self) -> list[PushItem]:
        return list(self._graph)

    def dependencies(self, item: PushItem) -> set[PushItem]:
        return set(self._graph[item])

    def __len__(self) -> int:
        return len(self._graph)

    def sorter(self) -> TopologicalSorter:
        """Prepared sorter; call ``get_ready``/``done`` to walk the graph."""
        sorter = TopologicalSorter(self._graph)
        sorter.prepare()
        return sorter

    def order(self) -> list[PushItem]:
        """A complete order compatible with every dependency."""
        return list(TopologicalSorter(self._graph).static_order())

    @classmethod
    def build(
        cls,
        new_urls: Sequence[NewUrl] = (),
        new_annotations: Sequence[NewAnnotation] = (),
        new_tag_links: Sequence[NewTagLink] = (),
        tag_removals: Sequence[TagRemoval] = (),
        entries_to_update: Sequence[EntryRow] = (),
        annotations_to_update: Sequence[AnnotationRow] = (),
        deleted_entries: Sequence[int] = (),
        deleted_annotations: Sequence[int] = (),
        deleted_tags: Sequence[int] = (),
    ) -> "PushPlan":
        """
        Build the push graph from the contents of the staging tables.

        Returns:
            PushPlan holding one node per remote operation
        """
        plan = cls()

        tag_deletions = [
            PushItem(PushOp.DELETE_TAG, ("tag", tag_id)) for tag_id in deleted_tags
        ]
        for item in tag_deletions:
            plan.add(item)
        for entry_id in deleted_entries:
            plan.add(PushItem(PushOp.DELETE_ENTRY, ("entry", entry_id)))
        for annotation_id in deleted_annotations:
            plan.add(PushItem(PushOp.DELETE_ANNOTATION, ("annotation", annotation_id)))

        creates: dict[int, PushItem] = {}
        for new_url in new_urls:
            item = PushItem(PushOp.CREATE_ENTRY, ("new_url", new_url.id), new_url)
            creates[new_url.id] = item
            plan.add(item)

        updates: dict[int, PushItem] = {}
        for row in entries_to_update:
            item = PushItem(PushOp.UPDATE_ENTRY, ("entry", row.id), row)
            updates[row.id] = item
            plan.add(item)

        def entry_node(entry_id: int | None, new_url_id: int | None) -> PushItem | None:
            if new_url_id is not None:
                return creates.get(new_url_id)
            return updates.get(entry_id) if entry_id is not None else None

        links: dict[tuple[str, int], list[NewTagLink]] = defaultdict(list)
        for link in new_tag_links:
            if link.new_url_id is not None:
                links[("new_url", link.new_url_id)].append(link)
            else:
                links[("entry", link.entry_id)].append(link)

        adds: dict[int, PushItem] = {}
        for target, grouped in links.items():
            item = PushItem(PushOp.ADD_TAGS, target, tuple(grouped))
            plan.add(item, *tag_deletions)
            if target[0] == "new_url":
                plan.add(item, entry_node(None, target[1]))
            else:
                plan.add(item, entry_node(target[1], None))
                adds[target[1]] = item

        removals: dict[int, list[TagRemoval]] = defaultdict(list)
        for removal in tag_removals:
            removals[removal.entry_id].append(removal)
        for entry_id, grouped in removals.items():
            item = PushItem(PushOp.REMOVE_TAGS, ("entry", entry_id), tuple(grouped))
            plan.add(item, updates.get(entry_id), adds.get(entry_id))

        for annotation in new_annotations:
            item = PushItem(PushOp.CREATE_ANNOTATION, ("new_annotation", annotation.id), annotation)
            plan.add(item, entry_node(annotation.entry_id, annotation.new_url_id))

        for row in annotations_to_update:
            plan.add(PushItem(PushOp.UPDATE_ANNOTATION, ("annotation", row.id), row))

        log.info(
            "push_plan_built",
            items=len(plan),
            creates=len(creates),
            updates=len(updates),
            tag_changes=len(links) + len(removals),
        )
        return plan
