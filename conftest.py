"""Common test fixtures for the Trilium MCP server."""

from unittest.mock import create_autospec

import pytest

from trilium_client import Attribute, Note, NoteWithContent, TriliumClient, TriliumConfig


@pytest.fixture
def trilium_config():
    """Configuration pointing at a fake Trilium instance."""
    return TriliumConfig(base_url="http://trilium.test:37840/", token="test-token")


@pytest.fixture
def client():
    """A TriliumClient stand-in whose async methods are AsyncMocks."""
    return create_autospec(TriliumClient, instance=True)


@pytest.fixture
def make_note():
    """Factory for Note (or NoteWithContent when content is given)."""

    def _make_note(note_id="abc123", content=None, **fields):
        data = {
            "note_id": note_id,
            "title": "Test Note",
            "type": "text",
            "mime": "text/html",
            "date_created": "2024-01-01 10:00:00.000+0100",
            "date_modified": "2024-01-02 10:00:00.000+0100",
        }
        data.update(fields)
        if content is not None:
            return NoteWithContent(content=content, **data)
        return Note(**data)

    return _make_note


@pytest.fixture
def make_attribute():
    """Factory for existing attributes as returned by Trilium."""

    def _make_attribute(attribute_id, name, value="", type="label", note_id="abc123"):
        return Attribute(
            attribute_id=attribute_id,
            note_id=note_id,
            type=type,
            name=name,
            value=value,
        )

    return _make_attribute
