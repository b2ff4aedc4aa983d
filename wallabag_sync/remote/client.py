"""Contract the sync engine expects from a remote wallabag client."""

from datetime import datetime
from typing import Any, Protocol, Sequence

from wallabag_sync.models.entities import RemoteAnnotation, RemoteEntry, RemoteTag


class RemoteClient(Protocol):
    """Typed request functions against the remote entity store.

    Every method may raise :class:`~wallabag_sync.remote.errors.TransportError`
    or :class:`~wallabag_sync.remote.errors.AuthError`. Methods addressing a
    single entity raise :class:`~wallabag_sync.remote.errors.NotFoundError`
    when it does not exist, and rejected payloads raise
    :class:`~wallabag_sync.remote.errors.RemoteValidationError`.
    """

    def check_connection(self) -> str:
        """Authenticate and return the server API version."""
        ...

    def list_entries(self, since: datetime | None = None) -> Sequence[RemoteEntry]: ...

    def get_entry(self, entry_id: int) -> RemoteEntry: ...

    def entry_exists(self, url: str) -> int | None: ...

    def create_entry(
        self, url: str, tags: Sequence[str] | None = None, **fields: Any
    ) -> RemoteEntry: ...

    def update_entry(self, entry_id: int, changed_fields: dict[str, Any]) -> RemoteEntry: ...

    def delete_entry(self, entry_id: int) -> None: ...

    def list_tags(self) -> Sequence[RemoteTag]: ...

    def delete_tag(self, tag_id: int) -> None: ...

    def add_tags_to_entry(self, entry_id: int, labels: Sequence[str]) -> RemoteEntry: ...

    def remove_tag_from_entry(self, entry_id: int, tag_id: int) -> RemoteEntry: ...

    def list_annotations(self, entry_id: int) -> Sequence[RemoteAnnotation]: ...

    def create_annotation(self, entry_id: int, payload: dict[str, Any]) -> RemoteAnnotation: ...

    def update_annotation(
        self, annotation_id: int, changed_fields: dict[str, Any]
    ) -> RemoteAnnotation: ...

    def delete_annotation(self, annotation_id: int) -> None: ...
