#!/usr/bin/env python3
"""
Trilium MCP Server
Search, read, create, update and delete Trilium notes from an MCP client.
"""

import asyncio
import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool, ToolAnnotations
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from note_format import NoteType, content_for_reading, content_for_writing
from trilium_client import (
    Attribute,
    AttributeInput,
    PartialUpdateError,
    TriliumClient,
    TriliumConfig,
    TriliumError,
    TriliumValidationError,
)

# Load environment variables
load_dotenv()

SERVER_NAME = "trilium-mcp"
SERVER_VERSION = "1.0.0"

# Logging configuration from environment variables
LOG_DIR = os.getenv('LOG_DIR', '/tmp/trilium_mcp_logs')
LOG_RETENTION_DAYS = int(os.getenv('LOG_RETENTION_DAYS', '30'))

ROOT_NOTE_ID = "root"

# Search limits
DEFAULT_SEARCH_LIMIT = 100
MAX_SEARCH_LIMIT = 1000

# Tree limits
DEFAULT_TREE_DEPTH = 1
MAX_TREE_DEPTH = 5

logger = logging.getLogger(__name__)


# Pydantic models for input validation
class ToolInput(BaseModel):
    """Base for tool inputs: camelCase argument names, unknown arguments rejected"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SearchNotesInput(ToolInput):
    """Input model for search_notes"""
    query: str = Field(..., min_length=1, description="Trilium search query")
    limit: int = Field(DEFAULT_SEARCH_LIMIT, ge=1, le=MAX_SEARCH_LIMIT, description=f"Max results (1-{MAX_SEARCH_LIMIT})")

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Search query cannot be blank")
        return v.strip()


class GetNoteInput(ToolInput):
    """Input model for get_note"""
    note_id: str = Field(..., min_length=1, description="The ID of the note to retrieve")
    include_content: bool = Field(True, description="Whether to include the note content")


class GetNoteTreeInput(ToolInput):
    """Input model for get_note_tree"""
    note_id: str = Field(ROOT_NOTE_ID, min_length=1, description="The ID of the parent note")
    depth: int = Field(DEFAULT_TREE_DEPTH, ge=1, le=MAX_TREE_DEPTH, description=f"Levels to retrieve (1-{MAX_TREE_DEPTH})")


class CreateNoteInput(ToolInput):
    """Input model for create_note"""
    parent_note_id: str = Field(ROOT_NOTE_ID, min_length=1, description="ID of the parent note")
    title: str = Field(..., min_length=1, description="Title of the new note")
    content: str = Field(..., description="Content of the note")
    content_format: Literal["markdown", "html"] = Field("markdown", description="Format of the content")
    type: NoteType = Field(NoteType.TEXT, description="Type of note")
    mime: Optional[str] = Field(None, description="MIME type for code notes")
    attributes: Optional[list[AttributeInput]] = Field(None, description="Labels and relations to set")


class UpdateNoteInput(ToolInput):
    """Input model for update_note"""
    note_id: str = Field(..., min_length=1, description="ID of the note to update")
    title: Optional[str] = Field(None, min_length=1, description="New title for the note")
    content: Optional[str] = Field(None, description="New content for the note")
    content_format: Literal["markdown", "html"] = Field("markdown", description="Format of the content")
    attributes: Optional[list[AttributeInput]] = Field(None, description="Labels and relations to create or update")


class DeleteNoteInput(ToolInput):
    """Input model for delete_note"""
    note_id: str = Field(..., min_length=1, description="ID of the note to delete")


# Output models
class OutputModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TreeNode(OutputModel):
    note_id: str
    title: str
    type: str
    children: Optional[list["TreeNode"]] = None


class AttributeChange(OutputModel):
    """Outcome of reconciling one desired attribute"""
    action: Literal["created", "updated"]
    attribute_id: str
    type: str
    name: str
    value: str

    def describe(self) -> str:
        return f"{self.action} {self.type} '{self.name}'"


# Response utilities
def create_error_response(
    error_message: str,
    suggestion: str = "",
    error_code: str = "",
    details: dict = None
) -> dict:
    """
    Create a standardized, actionable error response.

    Args:
        error_message: Clear description of what went wrong
        suggestion: Actionable suggestion for how to fix it
        error_code: Machine-readable error code (e.g., "AUTH_FAILED", "VALIDATION_FAILED")
        details: Additional context/details

    Returns:
        Standardized error response dict
    """
    response = {
        "success": False,
        "error": error_message
    }

    if suggestion:
        response["error"] = f"{error_message}. {suggestion}"

    if error_code:
        response["error_code"] = error_code

    if details:
        response["details"] = details

    return response


def to_json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


def cleanup_old_logs(log_dir, days_old=30) -> int:
    """Remove log files older than specified days. If days_old=0, delete all logs.

    Returns the number of deleted files.
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return 0

    cutoff_time = time.time() - (days_old * 24 * 60 * 60)
    deleted_count = 0
    for log_file in log_path.glob("*.log"):
        try:
            if days_old == 0 or log_file.stat().st_mtime < cutoff_time:
                log_file.unlink()
                deleted_count += 1
        except OSError as e:
            logger.warning(f"Could not remove old log file {log_file}: {e}")

    return deleted_count


def setup_logging(log_dir: str = LOG_DIR, retention_days: int = LOG_RETENTION_DAYS) -> str:
    """Configure logging to a timestamped file and stderr. Returns the log file path."""
    os.makedirs(log_dir, exist_ok=True)

    # Clean up old logs on startup
    deleted_count = cleanup_old_logs(log_dir, days_old=retention_days)

    log_file = os.path.join(log_dir, f"mcp_server_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")

    # stdout carries the MCP protocol, so the console handler writes to stderr
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    if deleted_count:
        logger.info(f"Cleaned up {deleted_count} old log files (retention: {retention_days} days)")

    return log_file


# Hierarchy
async def build_note_tree(
    client: TriliumClient,
    note_id: str,
    max_depth: int,
    current_depth: int = 1
) -> list[TreeNode]:
    """Expand the children of `note_id` into TreeNodes, `max_depth` levels deep.

    Siblings are resolved concurrently; the result keeps the store's order.
    A note that disappears mid-traversal fails the whole call.
    """
    children = await client.get_note_children(note_id)

    async def expand(child) -> TreeNode:
        node = TreeNode(note_id=child.note_id, title=child.title, type=child.type)
        if current_depth < max_depth and child.child_note_ids:
            node.children = await build_note_tree(client, child.note_id, max_depth, current_depth + 1)
        return node

    return list(await asyncio.gather(*(expand(child) for child in children)))


# Attributes
async def reconcile_attributes(
    client: TriliumClient,
    note_id: str,
    existing: list[Attribute],
    desired: list[AttributeInput]
) -> list[AttributeChange]:
    """Create or update each desired attribute, matched on (type, name).

    The first existing attribute with the same type and name is updated in
    place, otherwise a new one is created. `existing` is a single snapshot, so
    two desired entries with the same (type, name) both update the same
    attribute. Actions run one at a time and are not rolled back on failure.
    """
    changes = []
    for attr in desired:
        match = next(
            (current for current in existing if current.type == attr.type and current.name == attr.name),
            None
        )
        try:
            if match is not None:
                await client.update_attribute(match.attribute_id, attr.value)
                change = AttributeChange(
                    action="updated",
                    attribute_id=match.attribute_id,
                    type=attr.type,
                    name=attr.name,
                    value=attr.value
                )
            else:
                created = await client.create_attribute(note_id, attr)
                change = AttributeChange(
                    action="created",
                    attribute_id=created.attribute_id,
                    type=attr.type,
                    name=attr.name,
                    value=attr.value
                )
        except TriliumError as e:
            if changes:
                raise PartialUpdateError(
                    f"Setting {attr.type} '{attr.name}'",
                    [change.describe() for change in changes],
                    e
                ) from e
            raise

        logger.debug(f"Attribute {change.describe()} on note {note_id}")
        changes.append(change)

    return changes


# Tool handlers
async def search_notes(client: TriliumClient, params: SearchNotesInput) -> str:
    """Search for notes using Trilium search syntax"""
    logger.info(f"search_notes called - query='{params.query}', limit={params.limit}")

    results = await client.search_notes(params.query, params.limit)

    if not results:
        return f'No notes found matching "{params.query}"'

    return to_json({
        "count": len(results),
        "notes": [
            {"noteId": note.note_id, "title": note.title, "type": note.type}
            for note in results
        ]
    })


async def get_note(client: TriliumClient, params: GetNoteInput) -> str:
    """Get a note's metadata and, optionally, its content"""
    logger.info(f"get_note called - note_id='{params.note_id}', include_content={params.include_content}")

    if params.include_content:
        note = await client.get_note_with_content(params.note_id)
    else:
        note = await client.get_note(params.note_id)

    data = {
        "noteId": note.note_id,
        "title": note.title,
        "type": note.type,
        "mime": note.mime
    }

    if params.include_content:
        content, content_format = content_for_reading(note.type, note.content)
        data["content"] = content
        data["contentFormat"] = content_format.value

    data.update({
        "dateCreated": note.date_created,
        "dateModified": note.date_modified,
        "attributes": [
            {"type": attr.type, "name": attr.name, "value": attr.value}
            for attr in note.attributes
        ]
    })

    return to_json(data)


async def get_note_tree(client: TriliumClient, params: GetNoteTreeInput) -> str:
    """Get the children/hierarchy of a note"""
    logger.info(f"get_note_tree called - note_id='{params.note_id}', depth={params.depth}")

    tree = await build_note_tree(client, params.note_id, params.depth)

    if not tree:
        return f'No child notes found under "{params.note_id}"'

    return to_json({
        "parentNoteId": params.note_id,
        "depth": params.depth,
        "children": [node.model_dump(by_alias=True, exclude_none=True) for node in tree]
    })


async def create_note(client: TriliumClient, params: CreateNoteInput) -> str:
    """Create a note, then set any requested attributes on it"""
    logger.info(
        f"create_note called - parent='{params.parent_note_id}', title='{params.title}', "
        f"type='{params.type.value}', format='{params.content_format}'"
    )

    content = content_for_writing(params.type, params.content, params.content_format)
    result = await client.create_note(
        params.parent_note_id,
        params.title,
        params.type.value,
        content,
        params.mime
    )
    note = result.note

    response = {
        "success": True,
        "noteId": note.note_id,
        "title": note.title,
        "type": note.type,
        "parentNoteId": params.parent_note_id
    }

    if params.attributes:
        created_step = f"created note {note.note_id}"
        try:
            changes = await reconcile_attributes(client, note.note_id, [], params.attributes)
        except PartialUpdateError as e:
            raise PartialUpdateError(e.failed_step, [created_step] + e.applied, e.cause) from e.cause
        except TriliumError as e:
            raise PartialUpdateError(
                f"Setting attributes on note {note.note_id}", [created_step], e
            ) from e
        response["attributes"] = [change.model_dump(by_alias=True) for change in changes]

    return to_json(response)


async def update_note(client: TriliumClient, params: UpdateNoteInput) -> str:
    """Update a note's title, content and/or attributes"""
    logger.info(f"update_note called - note_id='{params.note_id}'")

    if params.title is None and params.content is None and not params.attributes:
        raise TriliumValidationError(
            'At least one of "title", "content" or "attributes" must be provided',
            suggestion="Provide at least one field to update"
        )

    # The note's type selects content conversion; its attributes are the reconciliation snapshot
    note = None
    if params.content is not None or params.attributes:
        note = await client.get_note(params.note_id)

    updated = []
    changes = []
    step = "title"
    try:
        if params.title is not None:
            await client.update_note_title(params.note_id, params.title)
            updated.append("title")

        if params.content is not None:
            step = "content"
            content = content_for_writing(note.type, params.content, params.content_format)
            await client.update_note_content(params.note_id, content)
            updated.append("content")

        if params.attributes:
            step = "attributes"
            changes = await reconcile_attributes(client, params.note_id, note.attributes, params.attributes)
            updated.append("attributes")
    except PartialUpdateError as e:
        if updated:
            raise PartialUpdateError(e.failed_step, updated + e.applied, e.cause) from e.cause
        raise
    except TriliumError as e:
        if updated:
            raise PartialUpdateError(f"Updating {step}", updated, e) from e
        raise

    response = {
        "success": True,
        "noteId": params.note_id,
        "updated": updated
    }
    if changes:
        response["attributes"] = [change.model_dump(by_alias=True) for change in changes]

    return to_json(response)


async def delete_note(client: TriliumClient, params: DeleteNoteInput) -> str:
    """Delete a note"""
    logger.info(f"delete_note called - note_id='{params.note_id}'")

    await client.delete_note(params.note_id)

    return to_json({
        "success": True,
        "noteId": params.note_id,
        "message": "Note deleted successfully"
    })


# Tool handlers mapping: name -> (input model, handler)
TOOL_HANDLERS = {
    "search_notes": (SearchNotesInput, search_notes),
    "get_note": (GetNoteInput, get_note),
    "get_note_tree": (GetNoteTreeInput, get_note_tree),
    "create_note": (CreateNoteInput, create_note),
    "update_note": (UpdateNoteInput, update_note),
    "delete_note": (DeleteNoteInput, delete_note),
}

ATTRIBUTES_SCHEMA = {
    "type": "array",
    "description": "Labels and relations. An existing attribute with the same type and name is updated, otherwise one is created",
    "items": {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["label", "relation"], "description": "label or relation"},
            "name": {"type": "string", "description": "Attribute name, e.g. 'priority'"},
            "value": {"type": "string", "description": "Label value, or target note ID for relations"},
            "isInheritable": {"type": "boolean", "description": "Whether child notes inherit it (default: false)"}
        },
        "required": ["type", "name"]
    }
}

CONTENT_FORMAT_SCHEMA = {
    "type": "string",
    "enum": ["markdown", "html"],
    "description": "Format of the provided content (default: markdown). Only applies to text notes"
}

TOOLS = [
    Tool(
        name="search_notes",
        description="Search for notes in Trilium using full-text search or attribute queries",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": (
                        'Search query using Trilium search syntax. Examples: "keyword" (full-text search), '
                        '"#label" (notes with a label), "#label=value" (label with specific value), '
                        '"#tag=recipe AND #tag=vegetarian" (multiple tags), "note.title =* prefix" (title prefix match)'
                    )
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_SEARCH_LIMIT,
                    "description": f"Maximum number of results to return (default: {DEFAULT_SEARCH_LIMIT})"
                }
            },
            "required": ["query"]
        },
        annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
    ),
    Tool(
        name="get_note",
        description="Get a note by ID, including its content and metadata. Text note content is returned as markdown",
        inputSchema={
            "type": "object",
            "properties": {
                "noteId": {"type": "string", "description": "The ID of the note to retrieve"},
                "includeContent": {"type": "boolean", "description": "Whether to include the note content (default: true)"}
            },
            "required": ["noteId"]
        },
        annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
    ),
    Tool(
        name="get_note_tree",
        description="Get the children/hierarchy of a note",
        inputSchema={
            "type": "object",
            "properties": {
                "noteId": {"type": "string", "description": 'The ID of the parent note (default: "root" for top-level notes)'},
                "depth": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_TREE_DEPTH,
                    "description": f"How many levels deep to retrieve (default: {DEFAULT_TREE_DEPTH}, max: {MAX_TREE_DEPTH})"
                }
            }
        },
        annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
    ),
    Tool(
        name="create_note",
        description="Create a new note in Trilium. Content can be provided as markdown (default) or HTML via contentFormat",
        inputSchema={
            "type": "object",
            "properties": {
                "parentNoteId": {"type": "string", "description": 'ID of the parent note (default: "root")'},
                "title": {"type": "string", "description": "Title of the new note"},
                "content": {"type": "string", "description": "Content of the note"},
                "contentFormat": CONTENT_FORMAT_SCHEMA,
                "type": {
                    "type": "string",
                    "enum": [note_type.value for note_type in NoteType],
                    "description": 'Type of note (default: "text")'
                },
                "mime": {"type": "string", "description": 'MIME type for code notes (e.g., "application/javascript")'},
                "attributes": ATTRIBUTES_SCHEMA
            },
            "required": ["title", "content"]
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False, openWorldHint=True)
    ),
    Tool(
        name="update_note",
        description="Update a note's title, content and/or attributes. Content can be provided as markdown (default) or HTML via contentFormat",
        inputSchema={
            "type": "object",
            "properties": {
                "noteId": {"type": "string", "description": "ID of the note to update"},
                "title": {"type": "string", "description": "New title for the note"},
                "content": {"type": "string", "description": "New content for the note"},
                "contentFormat": CONTENT_FORMAT_SCHEMA,
                "attributes": ATTRIBUTES_SCHEMA
            },
            "required": ["noteId"]
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=True, openWorldHint=True)
    ),
    Tool(
        name="delete_note",
        description="Delete a note from Trilium",
        inputSchema={
            "type": "object",
            "properties": {
                "noteId": {"type": "string", "description": "ID of the note to delete"}
            },
            "required": ["noteId"]
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True, idempotentHint=True, openWorldHint=True)
    ),
]


def _error_result(error: dict) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=to_json(error))], isError=True)


async def execute_tool(client: TriliumClient, name: str, arguments: dict | None = None) -> CallToolResult:
    """Validate arguments, run the tool and shape its result or error."""
    if not arguments:
        arguments = {}

    entry = TOOL_HANDLERS.get(name)
    if entry is None:
        raise ValueError(f"Unknown tool: {name}")
    input_model, handler = entry

    try:
        params = input_model.model_validate(arguments)
    except ValidationError as e:
        logger.warning(f"{name} rejected invalid arguments: {e.error_count()} error(s)")
        return _error_result(create_error_response(
            f"Invalid arguments for {name}: {_format_validation_error(e)}",
            "Check the tool's input schema",
            "VALIDATION_FAILED"
        ))

    try:
        text = await handler(client, params)
    except TriliumError as e:
        logger.error(f"{name} failed: [{e.code}] {e.message}")
        return _error_result(e.to_response())
    except Exception as e:
        logger.exception(f"{name} raised an unexpected error")
        return _error_result(create_error_response(f"Tool execution failed: {str(e)}", error_code="EXCEPTION"))

    return CallToolResult(content=[TextContent(type="text", text=text)])


def create_server(client: TriliumClient) -> Server:
    """Build the MCP server around a configured client."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def handle_list_tools() -> list[Tool]:
        """List available Trilium tools."""
        return TOOLS

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict | None = None):
        """Handle tool execution."""
        return await execute_tool(client, name, arguments)

    return server


async def main():
    """Run the Trilium MCP server over stdio."""
    log_file = setup_logging()
    logger.info(f"=== Trilium MCP Server Starting - Log file: {log_file} ===")

    try:
        config = TriliumConfig.from_env()
    except TriliumError as e:
        logger.error(f"Failed to start {SERVER_NAME}: {e.to_response()['error']}")
        raise SystemExit(1) from e
    except ValueError as e:
        logger.error(f"Failed to start {SERVER_NAME}: invalid configuration: {e}")
        raise SystemExit(1) from e

    logger.info(f"Using Trilium at {config.base_url}")
    server = create_server(TriliumClient(config))

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            InitializationOptions(
                server_name=SERVER_NAME,
                server_version=SERVER_VERSION,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={}
                ),
            ),
        )


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
