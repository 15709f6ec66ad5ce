"""
Content conversion between Trilium's HTML and Markdown.

Text notes are stored as HTML (CKEditor output) but shown to the agent as
Markdown. Every other note type passes through untouched.
"""

import re
from enum import Enum

from markdown_it import MarkdownIt
from markdownify import UNDERSCORE, MarkdownConverter, abstract_inline_conversion


class NoteType(str, Enum):
    """Note types accepted when creating notes"""
    TEXT = "text"
    CODE = "code"
    FILE = "file"
    IMAGE = "image"
    SEARCH = "search"
    BOOK = "book"
    RELATION_MAP = "relationMap"
    RENDER = "render"


class ContentFormat(str, Enum):
    """Declared format of note content at the tool boundary"""
    MARKDOWN = "markdown"
    HTML = "html"
    RAW = "raw"


def content_for_reading(note_type: str, raw_content: str) -> tuple[str, ContentFormat]:
    """Convert stored content for display. Returns (content, declared format)."""
    if note_type == NoteType.TEXT:
        return html_to_markdown(raw_content), ContentFormat.MARKDOWN
    return raw_content, ContentFormat.RAW


def content_for_writing(
    note_type: str,
    content: str,
    content_format: ContentFormat = ContentFormat.MARKDOWN
) -> str:
    """Convert caller content into what the store expects for this note type."""
    if note_type == NoteType.TEXT:
        if content_format == ContentFormat.MARKDOWN:
            return markdown_to_html(content)
        return content
    return content


# HTML -> Markdown

_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _code_language(el) -> str:
    """Language of a <pre> block, read from CKEditor's language-* class"""
    code = el.find("code")
    for css_class in (code or el).get("class") or []:
        if css_class.startswith("language-"):
            return css_class[len("language-"):]
    return ""


class NoteMarkdownConverter(MarkdownConverter):
    """markdownify converter producing `* ` bullets, `**bold**` and `_italic_`"""

    convert_b = abstract_inline_conversion(lambda self: "**")
    convert_strong = convert_b

    def convert_script(self, el, text, *args, **kwargs):
        return ""

    convert_style = convert_script


_html_converter = NoteMarkdownConverter(
    heading_style="ATX",
    bullets="*",
    strong_em_symbol=UNDERSCORE,
    escape_misc=False,
    code_language_callback=_code_language,
)


def html_to_markdown(content: str) -> str:
    """Convert note HTML to Markdown. Unknown tags are flattened to their text."""
    if not content:
        return ""
    markdown = _html_converter.convert(content)
    return _BLANK_LINES_RE.sub("\n\n", markdown).strip()


# Markdown -> HTML

# Raw HTML in Markdown input is escaped and stored as literal text
_markdown_parser = MarkdownIt("gfm-like", {"html": False})


def markdown_to_html(text: str) -> str:
    """Render Markdown (CommonMark plus GFM tables, strikethrough and autolinks) to HTML"""
    if not text:
        return ""
    return _markdown_parser.render(text)
