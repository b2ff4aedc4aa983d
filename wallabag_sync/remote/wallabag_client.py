"""HTTP client for the wallabag REST API."""

from datetime import datetime
from typing import Any, Sequence

import requests
import structlog
from pydantic import ValidationError
from requests.exceptions import RequestException

from wallabag_sync.models.config import WallabagConfig
from wallabag_sync.models.entities import RemoteAnnotation, RemoteEntry, RemoteTag
from wallabag_sync.remote.errors import (
    AuthError,
    NotFoundError,
    RemoteValidationError,
    TransportError,
)

log = structlog.stdlib.get_logger()

PAGE_SIZE = 100


class _ExpiredToken(Exception):
    pass


def encode_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Convert Python values into the wire format the API expects.

    Booleans become ``0``/``1``, datetimes ISO-8601 strings and label or
    author lists comma-joined strings.
    """
    encoded: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, bool):
            encoded[key] = int(value)
        elif isinstance(value, datetime):
            encoded[key] = value.isoformat()
        elif key in ("tags", "authors") and isinstance(value, (list, tuple)):
            encoded[key] = ",".join(str(item) for item in value)
        else:
            encoded[key] = value
    return encoded


def check_labels(labels: Sequence[str]) -> list[str]:
    """Reject tag labels that cannot be sent as a comma-joined list."""
    checked = []
    for label in labels:
        if not label or "," in label:
            raise RemoteValidationError(f"Invalid tag label: {label!r}")
        checked.append(label)
    return checked


class WallabagClient:
    """Wrapper around the wallabag HTTP API using OAuth2 password grant."""

    def __init__(self, config: WallabagConfig, session: requests.Session | None = None):
        """
        Initialize wallabag client.

        Args:
            config: Connection and credential settings
            session: Optional requests session (a new one is created if None)
        """
        self._config = config
        self._base_url = str(config.base_url).rstrip("/")
        self._session = session or requests.Session()
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        log.info("wallabag_client_initialized", base_url=self._base_url)

    # Authentication

    def _request_token(self, grant: dict[str, str]) -> None:
        fields = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            **grant,
        }
        try:
            response = self._session.post(
                f"{self._base_url}/oauth/v2/token",
                data=fields,
                timeout=self._config.timeout_seconds,
            )
        except RequestException as e:
            raise TransportError(f"Token request failed: {e}") from e

        if response.status_code >= 500:
            raise TransportError("Token endpoint unavailable", response.status_code)
        if response.status_code != 200:
            log.error("token_request_rejected", status_code=response.status_code)
            raise AuthError("Credentials rejected by token endpoint", response.status_code)

        info = response.json()
        if not isinstance(info, dict) or not info.get("access_token"):
            log.error("token_response_incomplete", status_code=response.status_code)
            raise AuthError("Token endpoint granted no access token", response.status_code)
        self._access_token = info["access_token"]
        self._refresh_token = info.get("refresh_token")
        log.debug("access_token_obtained", grant_type=grant["grant_type"])

    def _load_token(self) -> None:
        self._request_token(
            {
                "grant_type": "password",
                "username": self._config.username,
                "password": self._config.password,
            }
        )

    def _refresh(self) -> None:
        if self._refresh_token is None:
            self._load_token()
            return
        try:
            self._request_token(
                {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
            )
        except AuthError:
            # refresh tokens expire too; fall back to the password grant
            self._load_token()

    def _token(self) -> str:
        if self._access_token is None:
            self._load_token()
        if self._access_token is None:
            raise AuthError("No access token available")
        return self._access_token

    # Requests

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Send an authenticated request, refreshing the token once if it expired."""
        try:
            return self._send(method, path, params, json)
        except _ExpiredToken:
            log.info("access_token_expired_refreshing")
            self._refresh()
            try:
                return self._send(method, path, params, json)
            except _ExpiredToken:
                raise AuthError("Access token rejected after refresh", 401)

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._token()}"}

        log.debug("remote_request", method=method, path=path)

        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self._config.timeout_seconds,
            )
        except RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 401:
            if "expired" in self._error_message(response).lower():
                raise _ExpiredToken()
            raise AuthError(self._error_message(response) or "Unauthorized", status)
        if status == 403:
            raise AuthError(self._error_message(response) or "Forbidden", status)
        if status == 404:
            raise NotFoundError(f"{method} {path}: not found", status)
        if status >= 500:
            raise TransportError(f"{method} {path}: server error", status)
        if status >= 300:
            raise RemoteValidationError(
                f"{method} {path}: {self._error_message(response) or 'rejected'}", status
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteValidationError(f"{method} {path}: response is not JSON") from e

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(body, dict):
            if "error_description" in body:
                return str(body["error_description"])
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message", ""))
            if error is not None:
                return str(error)
        return ""

    @staticmethod
    def _parse(model: Any, data: Any, what: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            log.error("unexpected_response_structure", what=what, error=str(e))
            raise RemoteValidationError(f"Unexpected {what} structure: {e}") from e

    # API

    def check_connection(self) -> str:
        version = self._request("GET", "/api/version.json")
        log.info("remote_connection_checked", api_version=version)
        return str(version)

    def list_entries(self, since: datetime | None = None) -> list[RemoteEntry]:
        """
        List entries, following pagination until the last page.

        Args:
            since: Only return entries updated at or after this time

        Returns:
            RemoteEntry objects with nested tags and annotations
        """
        params: dict[str, Any] = {
            "sort": "updated",
            "order": "asc",
            "perPage": PAGE_SIZE,
            "detail": "full",
            "page": 1,
        }
        if since is not None:
            params["since"] = int(since.timestamp())

        log.info("fetching_entries", since=since)

        entries: list[RemoteEntry] = []
        while True:
            body = self._request("GET", "/api/entries.json", params=params)
            for item in body.get("_embedded", {}).get("items", []):
                entries.append(self._parse(RemoteEntry, item, "entry"))

            page = int(body.get("page", 1))
            pages = int(body.get("pages", 1))
            if page >= pages:
                break
            params["page"] = page + 1

        log.info("entries_fetched", count=len(entries))
        return entries

    def get_entry(self, entry_id: int) -> RemoteEntry:
        return self._parse(RemoteEntry, self._request("GET", f"/api/entries/{entry_id}.json"), "entry")

    def entry_exists(self, url: str) -> int | None:
        body = self._request(
            "GET", "/api/entries/exists.json", params={"url": url, "return_id": 1}
        )
        exists = body.get("exists") if isinstance(body, dict) else None
        if isinstance(exists, bool) or exists is None:
            return None
        return int(exists)

    def create_entry(
        self, url: str, tags: Sequence[str] | None = None, **fields: Any
    ) -> RemoteEntry:
        payload: dict[str, Any] = {"url": url, **fields}
        if tags:
            payload["tags"] = check_labels(tags)
        body = self._request("POST", "/api/entries.json", json=encode_payload(payload))
        entry = self._parse(RemoteEntry, body, "entry")
        log.info("remote_entry_created", entry_id=entry.id, url=url)
        return entry

    def update_entry(self, entry_id: int, changed_fields: dict[str, Any]) -> RemoteEntry:
        if "tags" in changed_fields:
            check_labels(changed_fields["tags"])
        body = self._request(
            "PATCH", f"/api/entries/{entry_id}.json", json=encode_payload(changed_fields)
        )
        return self._parse(RemoteEntry, body, "entry")

    def delete_entry(self, entry_id: int) -> None:
        self._request("DELETE", f"/api/entries/{entry_id}.json")

    def list_tags(self) -> list[RemoteTag]:
        body = self._request("GET", "/api/tags.json") or []
        return [self._parse(RemoteTag, item, "tag") for item in body]

    def delete_tag(self, tag_id: int) -> None:
        self._request("DELETE", f"/api/tags/{tag_id}.json")

    def add_tags_to_entry(self, entry_id: int, labels: Sequence[str]) -> RemoteEntry:
        body = self._request(
            "POST",
            f"/api/entries/{entry_id}/tags.json",
            json={"tags": ",".join(check_labels(labels))},
        )
        return self._parse(RemoteEntry, body, "entry")

    def remove_tag_from_entry(self, entry_id: int, tag_id: int) -> RemoteEntry:
        body = self._request("DELETE", f"/api/entries/{entry_id}/tags/{tag_id}.json")
        return self._parse(RemoteEntry, body, "entry")

    def list_annotations(self, entry_id: int) -> list[RemoteAnnotation]:
        body = self._request("GET", f"/api/annotations/{entry_id}.json") or {}
        return [self._parse(RemoteAnnotation, row, "annotation") for row in body.get("rows", [])]

    def create_annotation(self, entry_id: int, payload: dict[str, Any]) -> RemoteAnnotation:
        body = self._request("POST", f"/api/annotations/{entry_id}.json", json=payload)
        return self._parse(RemoteAnnotation, body, "annotation")

    def update_annotation(
        self, annotation_id: int, changed_fields: dict[str, Any]
    ) -> RemoteAnnotation:
        body = self._request(
            "PUT", f"/api/annotations/{annotation_id}.json", json=encode_payload(changed_fields)
        )
        return self._parse(RemoteAnnotation, body, "annotation")

    def delete_annotation(self, annotation_id: int) -> None:
        self._request("DELETE", f"/api/annotations/{annotation_id}.json")
