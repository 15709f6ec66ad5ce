"""
Trilium ETAPI client

Thin async wrapper around the Trilium Notes ETAPI. One method per remote
operation; HTTP failures are classified into the TriliumError hierarchy.
"""

import asyncio
import json
import logging
import os
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_TRILIUM_URL = "http://localhost:37840"
DEFAULT_HTTP_TIMEOUT = 30.0  # seconds
DEFAULT_MAX_CONCURRENT_REQUESTS = 8


# Error handling

class TriliumError(Exception):
    """Base exception for all Trilium MCP errors.

    Attributes:
        message: Clear description of what went wrong
        code: Machine-readable error code (e.g., "AUTH_FAILED", "NOT_FOUND")
        suggestion: Actionable suggestion for how to fix it
        details: Additional context
    """

    code = "TRILIUM_ERROR"
    suggestion = ""

    def __init__(
        self,
        message: str,
        code: str = "",
        suggestion: str = "",
        details: Optional[dict] = None
    ):
        self.message = message
        if code:
            self.code = code
        if suggestion:
            self.suggestion = suggestion
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to the standardized error response dict"""
        response = {
            "success": False,
            "error": f"{self.message}. {self.suggestion}" if self.suggestion else self.message,
            "error_code": self.code
        }
        if self.details:
            response["details"] = self.details
        return response


class TriliumConfigError(TriliumError):
    """Raised when required configuration is missing or invalid."""
    code = "CONFIG_MISSING"


class TriliumValidationError(TriliumError):
    """Raised when tool input fails validation. No remote call is made."""
    code = "VALIDATION_FAILED"


class TriliumAuthError(TriliumError):
    """Raised when Trilium rejects the ETAPI token (HTTP 401)."""
    code = "AUTH_FAILED"
    suggestion = "Check your TRILIUM_TOKEN. Get a token from Trilium: Options -> ETAPI"


class NoteNotFoundError(TriliumError):
    """Raised when the referenced note or attribute does not exist (HTTP 404)."""
    code = "NOT_FOUND"
    suggestion = "The note may have been deleted. Use search_notes() to find available notes"

    def __init__(self, endpoint: str, message: str = "Not found"):
        super().__init__(
            f"Not found: {endpoint} ({message})",
            details={"endpoint": endpoint}
        )
        self.endpoint = endpoint


class TriliumAPIError(TriliumError):
    """Raised for any other non-success response from Trilium."""
    code = "API_ERROR"

    def __init__(self, status_code: int, message: str, error_code: str = ""):
        details = {"http_status": status_code}
        if error_code:
            details["trilium_code"] = error_code
        super().__init__(f"Trilium API error ({status_code}): {message}", details=details)
        self.status_code = status_code


class TriliumConnectionError(TriliumError):
    """Raised when Trilium cannot be reached or does not answer in time."""
    code = "CONNECTION_FAILED"
    suggestion = "Check your TRILIUM_URL and network connection"


class PartialUpdateError(TriliumError):
    """Raised when a multi-step operation fails after some steps were applied.

    Applied steps are not rolled back.
    """
    code = "PARTIAL_UPDATE"
    suggestion = "Changes listed in 'applied' were already saved and were not rolled back"

    def __init__(self, failed_step: str, applied: list[str], cause: TriliumError):
        super().__init__(
            f"{failed_step} failed after partial update: {cause.message}",
            details={
                "failed_step": failed_step,
                "applied": list(applied),
                "cause": cause.code
            }
        )
        self.failed_step = failed_step
        self.applied = list(applied)
        self.cause = cause


# Configuration

class TriliumConfig(BaseModel):
    """Connection settings, read once at startup."""
    model_config = ConfigDict(frozen=True)

    base_url: str = Field(DEFAULT_TRILIUM_URL, description="Trilium server address")
    token: str = Field(..., min_length=1, description="ETAPI token")
    timeout: float = Field(DEFAULT_HTTP_TIMEOUT, gt=0, description="HTTP timeout in seconds")
    max_concurrent_requests: int = Field(
        DEFAULT_MAX_CONCURRENT_REQUESTS, ge=1, description="Max in-flight ETAPI requests"
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @classmethod
    def from_env(cls) -> "TriliumConfig":
        """Build configuration from TRILIUM_* environment variables"""
        token = os.getenv("TRILIUM_TOKEN", "")
        if not token:
            raise TriliumConfigError(
                "TRILIUM_TOKEN is required",
                suggestion="Get your token from Trilium: Options -> ETAPI"
            )
        return cls(
            base_url=os.getenv("TRILIUM_URL", DEFAULT_TRILIUM_URL),
            token=token,
            timeout=float(os.getenv("TRILIUM_HTTP_TIMEOUT", str(DEFAULT_HTTP_TIMEOUT))),
            max_concurrent_requests=int(
                os.getenv("TRILIUM_MAX_CONCURRENT_REQUESTS", str(DEFAULT_MAX_CONCURRENT_REQUESTS))
            )
        )


# ETAPI models

class EtapiModel(BaseModel):
    """Base for ETAPI payloads: camelCase on the wire, extra fields ignored"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Attribute(EtapiModel):
    attribute_id: str = ""
    note_id: str = ""
    type: Literal["label", "relation"]
    name: str
    value: str = ""
    position: int = 0
    is_inheritable: bool = False


class AttributeInput(EtapiModel):
    """An attribute the caller wants present on a note"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    type: Literal["label", "relation"] = Field(..., description="label or relation")
    name: str = Field(..., min_length=1, description="Attribute name")
    value: str = Field("", description="Label value, or target note ID for relations")
    is_inheritable: bool = Field(False, description="Whether child notes inherit it")


class Note(EtapiModel):
    note_id: str
    title: str = ""
    type: str = "text"
    mime: str = ""
    is_protected: bool = False
    date_created: str = ""
    date_modified: str = ""
    utc_date_created: str = ""
    utc_date_modified: str = ""
    parent_note_ids: list[str] = Field(default_factory=list)
    child_note_ids: list[str] = Field(default_factory=list)
    parent_branch_ids: list[str] = Field(default_factory=list)
    child_branch_ids: list[str] = Field(default_factory=list)
    attributes: list[Attribute] = Field(default_factory=list)


class NoteWithContent(Note):
    content: str = ""


class Branch(EtapiModel):
    branch_id: str = ""
    note_id: str = ""
    parent_note_id: str = ""
    note_position: int = 0
    prefix: Optional[str] = None
    is_expanded: bool = False


class SearchResult(EtapiModel):
    note_id: str
    title: str = ""
    type: str = ""
    is_protected: bool = False


class CreateNoteResponse(EtapiModel):
    note: Note
    branch: Branch


class TriliumClient:
    """Async ETAPI client.

    A fresh httpx.AsyncClient is opened per request; `transport` can be
    injected for testing.
    """

    def __init__(self, config: TriliumConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._request_slots = asyncio.Semaphore(config.max_concurrent_requests)

    async def _send(
        self,
        method: str,
        endpoint: str,
        json_body: Any = None,
        text_body: Optional[str] = None,
        params: Optional[dict] = None
    ) -> httpx.Response:
        url = f"{self.config.base_url}/etapi{endpoint}"
        headers = {"Authorization": self.config.token}
        if text_body is not None:
            headers["Content-Type"] = "text/plain"
        elif json_body is not None:
            headers["Content-Type"] = "application/json"

        logger.debug(f"ETAPI {method} {endpoint}")
        try:
            async with self._request_slots:
                async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                    response = await client.request(
                        method,
                        url,
                        headers=headers,
                        params=params,
                        json=json_body,
                        content=text_body.encode("utf-8") if text_body is not None else None
                    )
        except httpx.TimeoutException as e:
            raise TriliumConnectionError(
                f"Request to {endpoint} timed out",
                code="TIMEOUT",
                suggestion="Trilium is not responding. Check your TRILIUM_URL and network connection"
            ) from e
        except httpx.HTTPError as e:
            raise TriliumConnectionError(f"Could not reach Trilium at {self.config.base_url}: {e}") from e

        if response.is_error:
            self._raise_for_status(response, endpoint)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, endpoint: str) -> None:
        error_code = ""
        try:
            body = response.json()
            message = body.get("message") or response.reason_phrase
            error_code = body.get("code") or ""
        except (ValueError, AttributeError):
            message = response.reason_phrase

        logger.warning(f"ETAPI {endpoint} failed: HTTP {response.status_code} - {message}")

        if response.status_code == 401:
            raise TriliumAuthError(f"Authentication failed ({message})")
        if response.status_code == 404:
            raise NoteNotFoundError(endpoint, message)
        raise TriliumAPIError(response.status_code, message, error_code)

    async def _request_json(self, method: str, endpoint: str, json_body: Any = None, params: Optional[dict] = None) -> Any:
        response = await self._send(method, endpoint, json_body=json_body, params=params)
        # Empty bodies (e.g. DELETE) are an empty success payload
        if not response.content:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise TriliumAPIError(response.status_code, f"Invalid JSON from {endpoint}") from e

    async def search_notes(self, query: str, limit: int = 100) -> list[SearchResult]:
        """Search notes using Trilium's search syntax"""
        data = await self._request_json("GET", "/notes", params={"search": query, "limit": str(limit)})
        return [SearchResult.model_validate(item) for item in data.get("results", [])]

    async def get_note(self, note_id: str) -> Note:
        """Get a note by ID (metadata only)"""
        data = await self._request_json("GET", f"/notes/{note_id}")
        return Note.model_validate(data)

    async def get_note_content(self, note_id: str) -> str:
        response = await self._send("GET", f"/notes/{note_id}/content")
        return response.text

    async def get_note_with_content(self, note_id: str) -> NoteWithContent:
        """Fetch metadata and content concurrently and merge them"""
        note, content = await asyncio.gather(
            self.get_note(note_id),
            self.get_note_content(note_id)
        )
        return NoteWithContent(**note.model_dump(), content=content)

    async def get_note_children(self, note_id: str) -> list[Note]:
        """Get the child notes of a note, in the store's order"""
        note = await self.get_note(note_id)
        return list(await asyncio.gather(*(self.get_note(child_id) for child_id in note.child_note_ids)))

    async def create_note(
        self,
        parent_note_id: str,
        title: str,
        note_type: str,
        content: str,
        mime: Optional[str] = None
    ) -> CreateNoteResponse:
        payload = {
            "parentNoteId": parent_note_id,
            "title": title,
            "type": note_type,
            "content": content
        }
        if mime:
            payload["mime"] = mime
        data = await self._request_json("POST", "/create-note", json_body=payload)
        return CreateNoteResponse.model_validate(data)

    async def update_note_title(self, note_id: str, title: str) -> Note:
        data = await self._request_json("PATCH", f"/notes/{note_id}", json_body={"title": title})
        return Note.model_validate(data)

    async def update_note_content(self, note_id: str, content: str) -> None:
        await self._send("PUT", f"/notes/{note_id}/content", text_body=content)

    async def create_attribute(self, note_id: str, attr: AttributeInput) -> Attribute:
        data = await self._request_json("POST", "/attributes", json_body={
            "noteId": note_id,
            "type": attr.type,
            "name": attr.name,
            "value": attr.value,
            "isInheritable": attr.is_inheritable
        })
        return Attribute.model_validate(data)

    async def update_attribute(self, attribute_id: str, value: str) -> Attribute:
        """Update the value of an existing attribute"""
        data = await self._request_json("PATCH", f"/attributes/{attribute_id}", json_body={"value": value})
        return Attribute.model_validate(data)

    async def delete_note(self, note_id: str) -> None:
        await self._request_json("DELETE", f"/notes/{note_id}")
