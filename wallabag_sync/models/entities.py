"""Pydantic models for remote wallabag snapshots and locally cached rows."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


class EntityKind(str, Enum):
    """Kinds of synchronized entities."""

    ENTRY = "entry"
    ANNOTATION = "annotation"
    TAG = "tag"


class EntityState(str, Enum):
    """Synchronization state of a locally cached entity.

    Live rows are either ``CLEAN`` or ``PENDING_PUSH``. Staged creations are
    ``PENDING_CREATE`` and ids held in deletion staging are ``PENDING_DELETE``.
    """

    CLEAN = "clean"
    PENDING_PUSH = "pending_push"
    PENDING_CREATE = "pending_create"
    PENDING_DELETE = "pending_delete"


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Entry columns a user may change offline, keyed by local column name.
EDITABLE_ENTRY_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "content",
        "is_archived",
        "is_starred",
        "is_public",
        "language",
        "preview_picture",
        "published_at",
        "published_by",
        "origin_url",
    }
)

EDITABLE_ANNOTATION_FIELDS: frozenset[str] = frozenset({"text"})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Remote representation


class Range(BaseModel):
    """Position of an annotation inside an entry's content."""

    model_config = ConfigDict(populate_by_name=True)

    start: str | None = Field(default=None, description="Start container reference")
    end: str | None = Field(default=None, description="End container reference")
    start_offset: int = Field(default=..., alias="startOffset", ge=0)
    end_offset: int = Field(default=..., alias="endOffset", ge=0)


class RemoteTag(BaseModel):
    """Tag as returned by the wallabag API."""

    id: int = Field(default=..., gt=0)
    label: str = Field(default=..., min_length=1)
    slug: str = Field(default="")


class RemoteAnnotation(BaseModel):
    """Annotation as returned by the wallabag API."""

    id: int = Field(default=..., gt=0)
    annotator_schema_version: str = Field(default="v1.0")
    created_at: datetime
    updated_at: datetime
    quote: str | None = None
    ranges: list[Range] = Field(default_factory=list)
    text: str = ""
    user: str | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("text", mode="before")
    @classmethod
    def blank_text(cls, v: Any) -> Any:
        return "" if v is None else v


class RemoteEntry(BaseModel):
    """Entry as returned by the wallabag API, with nested tags and annotations."""

    model_config = ConfigDict(extra="ignore")

    id: int = Field(default=..., gt=0)
    url: str | None = None
    title: str | None = None
    content: str | None = None
    created_at: datetime
    updated_at: datetime
    published_at: datetime | None = None
    starred_at: datetime | None = None
    is_archived: bool = False
    is_starred: bool = False
    is_public: bool = False
    origin_url: str | None = None
    domain_name: str | None = None
    http_status: str | None = None
    mimetype: str | None = None
    language: str | None = None
    preview_picture: str | None = None
    reading_time: int | None = None
    uid: str | None = None
    published_by: list[str] | None = None
    headers: list[str] | None = None
    user_email: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    tags: list[RemoteTag] = Field(default_factory=list)
    annotations: list[RemoteAnnotation] | None = None

    @field_validator("created_at", "updated_at", "published_at", "starred_at")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("http_status", mode="before")
    @classmethod
    def status_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("headers", mode="before")
    @classmethod
    def flatten_headers(cls, v: Any) -> Any:
        # The API reports headers either as a list or as a name/value mapping.
        if isinstance(v, dict):
            return [f"{name}: {value}" for name, value in v.items()]
        return v


# Local representation


class EntryRow(BaseModel):
    """Flattened row of the ``entries`` table."""

    id: int = Field(default=..., gt=0, description="Server-assigned entry id")
    url: str | None = None
    title: str | None = None
    content: str | None = None
    created_at: datetime
    updated_at: datetime
    published_at: datetime | None = None
    starred_at: datetime | None = None
    is_archived: bool = False
    is_starred: bool = False
    is_public: bool = False
    origin_url: str | None = None
    domain_name: str | None = None
    http_status: str | None = None
    mimetype: str | None = None
    language: str | None = None
    preview_picture: str | None = None
    reading_time: int | None = None
    uid: str | None = None
    published_by: str | None = Field(default=None, description="JSON-encoded author list")
    headers: str | None = Field(default=None, description="JSON-encoded header list")
    user_email: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    state: EntityState = EntityState.CLEAN
    pending_fields: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("created_at", "updated_at", "published_at", "starred_at")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_state(self) -> "EntryRow":
        _check_live_state(self.state, self.pending_fields, EDITABLE_ENTRY_FIELDS)
        return self

    @property
    def synced(self) -> bool:
        return self.state is EntityState.CLEAN


class TagRow(BaseModel):
    """Row of the ``tags`` table."""

    id: int = Field(default=..., gt=0)
    label: str = Field(default=..., min_length=1)
    slug: str = ""


class AnnotationRow(BaseModel):
    """Row of the ``annotations`` table; ranges are kept as a JSON array."""

    id: int = Field(default=..., gt=0)
    entry_id: int = Field(default=..., gt=0)
    annotator_schema_version: str = "v1.0"
    created_at: datetime
    updated_at: datetime
    quote: str | None = None
    ranges: str = "[]"
    text: str = ""
    user: str | None = None
    state: EntityState = EntityState.CLEAN
    pending_fields: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_state(self) -> "AnnotationRow":
        _check_live_state(self.state, self.pending_fields, EDITABLE_ANNOTATION_FIELDS)
        return self

    @property
    def synced(self) -> bool:
        return self.state is EntityState.CLEAN


def _check_live_state(
    state: EntityState, pending_fields: frozenset[str], editable: frozenset[str]
) -> None:
    if state is EntityState.CLEAN and pending_fields:
        raise ValueError("a clean row cannot carry pending fields")
    if state is EntityState.PENDING_PUSH and not pending_fields:
        raise ValueError("a pending_push row needs at least one pending field")
    if state not in (EntityState.CLEAN, EntityState.PENDING_PUSH):
        raise ValueError(f"live rows cannot be in state {state.value}")
    unknown = pending_fields - editable
    if unknown:
        raise ValueError(f"fields are not editable: {sorted(unknown)}")


class LocalEntrySnapshot(BaseModel):
    """Normalized form of one remote entry, ready to be written locally."""

    entry: EntryRow
    tags: list[TagRow] = Field(default_factory=list)
    annotations: list[AnnotationRow] | None = Field(
        default=None, description="None when the remote snapshot carried no annotation list"
    )


# Staged records


class NewUrl(BaseModel):
    """An entry saved offline that has never been pushed."""

    id: int = Field(default=..., gt=0, description="Local-only staging id")
    url: str = Field(default=..., min_length=1)
    title: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_archived: bool = False
    is_starred: bool = False
    created_at: datetime

    @property
    def state(self) -> EntityState:
        return EntityState.PENDING_CREATE


class NewAnnotation(BaseModel):
    """An annotation created offline, pointing at a cached or a staged entry."""

    id: int = Field(default=..., gt=0, description="Local-only staging id")
    entry_id: int | None = Field(default=None, description="Server id of a cached entry")
    new_url_id: int | None = Field(default=None, description="Staging id of a new url")
    quote: str = Field(default=..., min_length=1)
    text: str = ""
    ranges: str = "[]"
    created_at: datetime

    @model_validator(mode="after")
    def check_reference(self) -> "NewAnnotation":
        _check_single_reference(self.entry_id, self.new_url_id)
        return self

    @property
    def state(self) -> EntityState:
        return EntityState.PENDING_CREATE


class NewTagLink(BaseModel):
    """A label to attach to a cached or staged entry on next push."""

    id: int = Field(default=..., gt=0)
    entry_id: int | None = None
    new_url_id: int | None = None
    label: str = Field(default=..., min_length=1)

    @field_validator("label")
    @classmethod
    def no_comma(cls, v: str) -> str:
        if "," in v:
            raise ValueError("tag labels cannot contain a comma")
        return v

    @model_validator(mode="after")
    def check_reference(self) -> "NewTagLink":
        _check_single_reference(self.entry_id, self.new_url_id)
        return self


class TagRemoval(BaseModel):
    """A tag detached from a cached entry while offline."""

    entry_id: int = Field(default=..., gt=0)
    tag_id: int = Field(default=..., gt=0)


def _check_single_reference(entry_id: int | None, new_url_id: int | None) -> None:
    if (entry_id is None) == (new_url_id is None):
        raise ValueError("exactly one of entry_id and new_url_id must be set")


_URL_ADAPTER = TypeAdapter(HttpUrl)


def check_url(url: str) -> str:
    """
    Validate a url before it is saved.

    Raises:
        ValueError: If ``url`` is not an absolute http(s) url
    """
    try:
        _URL_ADAPTER.validate_python(url)
    except ValidationError as e:
        raise ValueError(f"Invalid url: {url!r}") from e
    return url
