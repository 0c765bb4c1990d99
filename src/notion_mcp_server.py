"""Notion MCP server with optional Markdown rendering of API responses.

Exposes the Notion REST API (blocks, pages, users, databases, comments,
search) as MCP tools. Every tool returns either the raw JSON response or,
when Markdown conversion is enabled and the caller asks for it, a
human-readable Markdown rendering produced by convert_to_markdown().

Token: NOTION_API_TOKEN environment variable, or --token-file <path>.
Markdown: NOTION_MARKDOWN_CONVERSION=true, or --markdown.
"""

import argparse
import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-mcp-server")

# =============================================================================
# Configuration
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

HTTP_HOST = "127.0.0.1"
HTTP_PORT = 2052

# Set once in main()
_notion_token: Optional[str] = None
_markdown_enabled: bool = False

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Semaphore to limit concurrent Notion API requests
_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None


def _get_token() -> str:
    """Get the Notion token (set at startup)."""
    if _notion_token is None:
        raise RuntimeError(
            "No Notion token. Set NOTION_API_TOKEN or pass --token-file <path>."
        )
    return _notion_token


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds; HTTP-dates yield None."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract a truncated error detail from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the rate-limiting semaphore."""
    global _notion_semaphore
    if _notion_semaphore is None:
        _notion_semaphore = asyncio.Semaphore(50)
    return _notion_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


# =============================================================================
# Sanitizing and Escaping
# =============================================================================

_SCRIPT_TAG_PATTERN = re.compile(
    r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE
)
_EVENT_HANDLER_PATTERNS = (
    re.compile(r'on\w+="[^"]*"', re.IGNORECASE),
    re.compile(r"on\w+='[^']*'", re.IGNORECASE),
)
# Only a data URI that runs to the very end of the text is stripped
_DATA_URI_PATTERN = re.compile(r'data:[^;]*;base64,[a-z0-9+/=]*\Z', re.IGNORECASE)


def sanitize_string(value: Any) -> str:
    """Strip script blocks, inline event handlers and base64 data URIs.

    This is a display-safety heuristic based on pattern matching, not an
    HTML parser. Non-string input yields an empty string.
    """
    if not isinstance(value, str):
        return ""

    value = _SCRIPT_TAG_PATTERN.sub("", value)
    for pattern in _EVENT_HANDLER_PATTERNS:
        value = pattern.sub("", value)
    return _DATA_URI_PATTERN.sub("", value)


def escape_table_cell(value: Any) -> str:
    """Sanitize a value and escape the characters that break a table row."""
    if not value:
        return ""

    sanitized = sanitize_string(value)
    return (
        sanitized
        .replace("|", "\\|")
        .replace("\n", " ")
        .replace("+", "\\+")
    )


def _break_cycles(value: Any, ancestors: frozenset = frozenset()) -> Any:
    """Copy nested containers, replacing self-references with a marker."""
    if isinstance(value, (dict, list, tuple)):
        if id(value) in ancestors:
            return "[Circular Reference]"
        ancestors = ancestors | {id(value)}
        if isinstance(value, dict):
            return {k: _break_cycles(v, ancestors) for k, v in value.items()}
        return [_break_cycles(v, ancestors) for v in value]
    return value


def safe_stringify(obj: Any) -> str:
    """Serialize any value to indented JSON without ever raising."""
    try:
        return json.dumps(
            _break_cycles(obj), indent=2, ensure_ascii=False, default=str
        )
    except (TypeError, ValueError, RecursionError) as e:
        logger.error(f"Failed to stringify object: {e}")
        return '{"error": "Failed to stringify object"}'


# =============================================================================
# Rendering Helpers
# =============================================================================


def _dig(obj: Any, *path: str) -> Any:
    """Follow a key path through nested dicts, returning None on any miss."""
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _format_number(number: float) -> str:
    """Format a number the way the Notion web client prints it."""
    if isinstance(number, float):
        if number != number:
            return "NaN"
        if number in (float("inf"), float("-inf")):
            return "Infinity" if number > 0 else "-Infinity"
        if number.is_integer() and abs(number) < 1e21:
            return str(int(number))
    return str(number)


def _to_text(value: Any) -> str:
    """Stringify a scalar JSON value; anything else becomes empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, str):
        return value
    return ""


def _first_non_empty(*values: Any) -> str:
    """Return the first value that stringifies to a non-empty string."""
    for value in values:
        text = _to_text(value)
        if text:
            return text
    return ""


def _is_absent(value: Any) -> bool:
    """True for None and empty scalars; empty dicts and lists count as present."""
    if isinstance(value, (dict, list)):
        return False
    return not value


def _json_fence(value: Any) -> str:
    return f"```json\n{safe_stringify(value)}\n```"


def _object_kind(entity: Any) -> Optional[str]:
    """Return the entity's `object` discriminator if it is a string."""
    kind = _dig(entity, "object")
    return kind if isinstance(kind, str) else None


# =============================================================================
# Rich Text → Markdown
# =============================================================================


def extract_rich_text(rich_text: Any) -> str:
    """Convert a Notion rich_text array to inline Markdown.

    Annotations nest with code innermost and strikethrough outermost:
    code, then bold, then italic, then strikethrough, then the link.
    Underline and color have no Markdown equivalent and are dropped.

    Args:
        rich_text: Notion API rich_text array.

    Returns:
        Markdown formatted string, or "" for anything that is not a list.
    """
    if not isinstance(rich_text, list):
        return ""

    parts = []
    for item in rich_text:
        if not isinstance(item, dict):
            continue

        text = sanitize_string(item.get("plain_text") or "")

        annotations = item.get("annotations")
        if isinstance(annotations, dict):
            if annotations.get("code"):
                text = f"`{text}`"
            if annotations.get("bold"):
                text = f"**{text}**"
            if annotations.get("italic"):
                text = f"*{text}*"
            if annotations.get("strikethrough"):
                text = f"~~{text}~~"

        href = item.get("href")
        if href:
            text = f"[{text}]({sanitize_string(href)})"

        parts.append(text)

    return "".join(parts)


# =============================================================================
# Property Values → Markdown
# =============================================================================

UNSUPPORTED_PROPERTY = "(Unsupported property type)"


def _option_name(payload: Any) -> str:
    return sanitize_string(_dig(payload, "name") or "")


def _option_names(payload: Any) -> str:
    if not isinstance(payload, list):
        return ""
    return ", ".join(sanitize_string(_dig(opt, "name")) for opt in payload)


def _date_range(payload: Any) -> str:
    start = sanitize_string(_dig(payload, "start") or "")
    end = _dig(payload, "end")
    if end:
        return f"{start} → {sanitize_string(end)}"
    return start


def _people(payload: Any) -> str:
    if not isinstance(payload, list):
        return ""
    return ", ".join(
        sanitize_string(_dig(person, "name") or _dig(person, "id"))
        for person in payload
    )


def _files(payload: Any) -> str:
    if not isinstance(payload, list):
        return ""
    links = []
    for file_obj in payload:
        name = sanitize_string(_dig(file_obj, "name") or "Attachment")
        url = sanitize_string(
            _dig(file_obj, "file", "url")
            or _dig(file_obj, "external", "url")
            or "#"
        )
        links.append(f"[{name}]({url})")
    return ", ".join(links)


def _formula(payload: Any) -> str:
    return sanitize_string(_first_non_empty(
        _dig(payload, "string"),
        _dig(payload, "number"),
        _dig(payload, "boolean"),
    ))


def _relation(payload: Any) -> str:
    if not isinstance(payload, list):
        return ""
    return ", ".join(
        f"`{sanitize_string(_dig(related, 'id'))}`" for related in payload
    )


def _rollup(payload: Any) -> str:
    if _dig(payload, "type") == "array":
        return safe_stringify(_dig(payload, "array") or [])
    return sanitize_string(_first_non_empty(
        _dig(payload, "number"),
        _dig(payload, "date", "start"),
        _dig(payload, "string"),
    ))


def _user_name(payload: Any) -> str:
    return sanitize_string(_dig(payload, "name") or _dig(payload, "id") or "")


def _plain_value(payload: Any) -> str:
    return sanitize_string(payload or "")


# Each renderer receives the payload stored under the property's type key
PROPERTY_VALUE_RENDERERS: dict[str, Callable[[Any], str]] = {
    "title": extract_rich_text,
    "rich_text": extract_rich_text,
    "number": _to_text,
    "select": _option_name,
    "multi_select": _option_names,
    "date": _date_range,
    "people": _people,
    "files": _files,
    "checkbox": lambda checked: "✓" if checked else "✗",
    "url": _plain_value,
    "email": _plain_value,
    "phone_number": _plain_value,
    "formula": _formula,
    "status": _option_name,
    "relation": _relation,
    "rollup": _rollup,
    "created_by": _user_name,
    "last_edited_by": _user_name,
    "created_time": _plain_value,
    "last_edited_time": _plain_value,
}


def render_property_value(prop: Any) -> str:
    """Render one page property value as display text.

    Args:
        prop: Property object from page.properties.

    Returns:
        The value as a string, or the unsupported marker for unknown types.
    """
    prop_type = _dig(prop, "type")
    if not isinstance(prop_type, str) or prop_type not in PROPERTY_VALUE_RENDERERS:
        return UNSUPPORTED_PROPERTY
    return PROPERTY_VALUE_RENDERERS[prop_type](prop.get(prop_type))


# =============================================================================
# Blocks → Markdown
# =============================================================================

MORE_CHILDREN_NOTE = "Additional API request is needed to display child blocks"
MORE_CONTENT_NOTE = "Additional API request is needed to display content"


def _block_text(payload: dict) -> str:
    return extract_rich_text(payload.get("rich_text") or [])


def _prefixed(prefix: str) -> Callable[[dict, dict], str]:
    """Build a renderer for blocks that are a marker plus rich text."""
    def render(block: dict, payload: dict) -> str:
        return f"{prefix}{_block_text(payload)}"
    return render


def _media_url(payload: dict) -> str:
    if payload.get("type") == "external":
        return sanitize_string(_dig(payload, "external", "url"))
    return sanitize_string(_dig(payload, "file", "url"))


def _captioned_media(template: str, default_caption: str) -> Callable[[dict, dict], str]:
    """Build a renderer for media blocks linking to their file."""
    def render(block: dict, payload: dict) -> str:
        caption = extract_rich_text(payload.get("caption") or []) or default_caption
        return template.format(caption=caption, url=_media_url(payload) or "#")
    return render


def _render_paragraph(block: dict, payload: dict) -> str:
    if not payload.get("rich_text"):
        return ""
    return extract_rich_text(payload["rich_text"])


def _render_to_do(block: dict, payload: dict) -> str:
    checked = "x" if payload.get("checked") else " "
    return f"- [{checked}] {_block_text(payload)}"


def _render_toggle(block: dict, payload: dict) -> str:
    return (
        f"<details>\n<summary>{_block_text(payload)}</summary>\n\n"
        f"*{MORE_CHILDREN_NOTE}*\n\n</details>"
    )


def _render_child_page(block: dict, payload: dict) -> str:
    return f"📄 **Child Page**: {sanitize_string(payload.get('title') or 'Untitled')}"


def _render_child_database(block: dict, payload: dict) -> str:
    return f"📊 **Embedded Database**: `{sanitize_string(block.get('id'))}`"


def _render_code(block: dict, payload: dict) -> str:
    language = sanitize_string(payload.get("language") or "plaintext")
    return f"```{language}\n{_block_text(payload)}\n```"


def _render_callout(block: dict, payload: dict) -> str:
    icon = sanitize_string(_dig(payload, "icon", "emoji") or "")
    return f"> {icon} {_block_text(payload)}"


def _render_bookmark(block: dict, payload: dict) -> str:
    url = sanitize_string(payload.get("url") or "")
    caption = extract_rich_text(payload.get("caption") or []) or url
    return f"[{caption}]({url})"


def _render_table(block: dict, payload: dict) -> str:
    width = _to_text(payload.get("table_width")) or "0"
    return (
        f"*Table data ({width} columns) - "
        "Additional API request is needed to display details*"
    )


def _render_embed(block: dict, payload: dict) -> str:
    return f"[Embedded content]({sanitize_string(payload.get('url') or '')})"


def _render_equation(block: dict, payload: dict) -> str:
    return f"$${sanitize_string(payload.get('expression') or '')}$$"


def _render_file(block: dict, payload: dict) -> str:
    name = sanitize_string(payload.get("name") or "File")
    return f"📎 [{name}]({_media_url(payload) or '#'})"


def _render_link_preview(block: dict, payload: dict) -> str:
    return f"🔗 [Preview]({sanitize_string(payload.get('url') or '')})"


def _render_link_to_page(block: dict, payload: dict) -> str:
    link_text = "Link to page"
    link_id = ""
    if payload.get("page_id"):
        link_id = sanitize_string(payload["page_id"])
    elif payload.get("database_id"):
        link_id = sanitize_string(payload["database_id"])
        link_text = "Link to database"
    return f"🔗 **{link_text}**: `{link_id}`"


def _render_synced_block(block: dict, payload: dict) -> str:
    synced_from = payload.get("synced_from")
    if synced_from:
        source = f"`{sanitize_string(_dig(synced_from, 'block_id'))}`"
    else:
        source = "original"
    return f"*Synced Block ({source}) - {MORE_CONTENT_NOTE}*"


def _render_table_row(block: dict, payload: dict) -> str:
    cells = payload.get("cells")
    if not isinstance(cells, list):
        return "*Empty table row*"
    row = " | ".join(escape_table_cell(extract_rich_text(cell)) for cell in cells)
    return f"| {row} |"


def _render_template(block: dict, payload: dict) -> str:
    return f"*Template Block: {_block_text(payload)} - {MORE_CONTENT_NOTE}*"


# Each renderer receives the block and the payload stored under its type key
BLOCK_RENDERERS: dict[str, Callable[[dict, dict], str]] = {
    "paragraph": _render_paragraph,
    "heading_1": _prefixed("# "),
    "heading_2": _prefixed("## "),
    "heading_3": _prefixed("### "),
    "bulleted_list_item": _prefixed("- "),
    "numbered_list_item": _prefixed("1. "),
    "to_do": _render_to_do,
    "toggle": _render_toggle,
    "child_page": _render_child_page,
    "child_database": _render_child_database,
    "image": _captioned_media("![{caption}]({url})", "image"),
    "video": _captioned_media("🎬 [{caption}]({url})", "Video"),
    "pdf": _captioned_media("📄 [{caption}]({url})", "PDF"),
    "file": _render_file,
    "divider": lambda block, payload: "---",
    "quote": _prefixed("> "),
    "code": _render_code,
    "callout": _render_callout,
    "bookmark": _render_bookmark,
    "embed": _render_embed,
    "link_preview": _render_link_preview,
    "link_to_page": _render_link_to_page,
    "equation": _render_equation,
    "breadcrumb": lambda block, payload: "[breadcrumb navigation]",
    "table_of_contents": lambda block, payload: "[TOC]",
    "table": _render_table,
    "table_row": _render_table_row,
    "synced_block": _render_synced_block,
    "template": _render_template,
    "unsupported": lambda block, payload: "*Unsupported block*",
}


def render_block(block: Any) -> str:
    """Render a single Notion block to Markdown.

    Children are never fetched or rendered; blocks that hold nested content
    render a placeholder asking for a separate children request.

    Args:
        block: Notion block object.

    Returns:
        Markdown for this block, or "" when the block has no type or payload.
    """
    if not isinstance(block, dict):
        return ""

    block_type = block.get("type")
    if not block_type or not isinstance(block_type, str):
        return ""

    payload = block.get(block_type)
    if _is_absent(payload) and block_type != "divider":
        return ""
    if not isinstance(payload, dict):
        payload = {}

    renderer = BLOCK_RENDERERS.get(block_type)
    if renderer is None:
        return f"*Unsupported block type: {sanitize_string(block_type)}*"
    return renderer(block, payload)


# =============================================================================
# Pages, Databases and Lists → Markdown
# =============================================================================

MARKDOWN_CONVERSION_ERROR = (
    "Error converting response to Markdown. "
    "Please try using the JSON format instead."
)

# Fixed Details column text for database schema types without options
SCHEMA_DETAIL_LABELS = {
    "created_by": "User reference",
    "last_edited_by": "User reference",
    "created_time": "Timestamp",
    "last_edited_time": "Timestamp",
    "date": "Date or date range",
    "email": "Email address",
    "files": "File attachments",
    "people": "People reference",
    "phone_number": "Phone number",
    "rich_text": "Formatted text",
    "title": "Database title",
    "url": "URL link",
    "checkbox": "Boolean value",
}


def extract_page_title(page: Any) -> str:
    """Return the Markdown text of the page's title property, or ""."""
    properties = _dig(page, "properties")
    if not isinstance(properties, dict):
        return ""

    for prop in properties.values():
        if _dig(prop, "type") == "title" and isinstance(prop.get("title"), list):
            return extract_rich_text(prop["title"])

    return ""


def _render_page_properties(properties: Any) -> str:
    if not isinstance(properties, dict):
        return ""

    lines = [
        "## Properties",
        "",
        "| Property | Value |",
        "|------------|----|",
    ]
    for name, prop in properties.items():
        lines.append(
            f"| {escape_table_cell(sanitize_string(name))} "
            f"| {escape_table_cell(render_property_value(prop))} |"
        )
    return "\n".join(lines) + "\n"


def _schema_details(prop_type: str, schema: Any) -> str:
    """Describe a database property schema for the Details column."""
    if prop_type in ("select", "multi_select", "status"):
        options = _dig(schema, prop_type, "options")
        return f"Options: {_option_names(options)}"
    if prop_type == "relation":
        return f"Related DB: {sanitize_string(_dig(schema, 'relation', 'database_id') or '')}"
    if prop_type == "formula":
        return f"Formula: {sanitize_string(_dig(schema, 'formula', 'expression') or '')}"
    if prop_type == "rollup":
        return f"Rollup: {sanitize_string(_dig(schema, 'rollup', 'function') or '')}"
    if prop_type == "number":
        return f"Format: {sanitize_string(_dig(schema, 'number', 'format') or 'plain number')}"
    return SCHEMA_DETAIL_LABELS.get(prop_type, "")


def _render_database_schema(properties: dict) -> str:
    lines = [
        "## Properties",
        "",
        "| Property Name | Type | Details |",
        "|------------|------|------|",
    ]
    for key, schema in properties.items():
        name = sanitize_string(_dig(schema, "name") or key)
        prop_type = sanitize_string(_dig(schema, "type") or "unknown")
        details = _schema_details(prop_type, schema)
        lines.append(
            f"| {escape_table_cell(name)} | {escape_table_cell(prop_type)} "
            f"| {escape_table_cell(details)} |"
        )
    return "\n".join(lines) + "\n\n"


def _view_link(entity: dict) -> str:
    if not entity.get("url"):
        return ""
    return f"\n[View in Notion]({sanitize_string(entity['url'])})\n"


def convert_page_to_markdown(page: dict) -> str:
    """Render a page: title heading, property table, ID note and link."""
    markdown = ""

    title = sanitize_string(extract_page_title(page))
    if title:
        markdown += f"# {title}\n\n"

    markdown += _render_page_properties(page.get("properties"))

    markdown += (
        "\n\n> This page contains child blocks. You can retrieve them "
        "using `notion_retrieve_block_children`.\n"
    )
    markdown += f"> Block ID: `{sanitize_string(page.get('id'))}`\n"
    markdown += _view_link(page)

    return markdown


def convert_database_to_markdown(database: dict) -> str:
    """Render a database: title, description, schema table and link."""
    markdown = ""

    title = sanitize_string(extract_rich_text(database.get("title") or []))
    if title:
        markdown += f"# {title} (Database)\n\n"

    description = sanitize_string(extract_rich_text(database.get("description") or []))
    if description:
        markdown += f"{description}\n\n"

    properties = database.get("properties")
    if isinstance(properties, dict):
        markdown += _render_database_schema(properties)

    markdown += _view_link(database)

    return markdown


# Heading chosen from the kind of the first result in a list
LIST_HEADINGS = {
    "page": "# Search Results (Pages)",
    "database": "# Search Results (Databases)",
    "block": "# Block Contents",
}


def _list_entry(title: str, item: dict) -> str:
    """Abbreviated list entry: linked title, ID and a rule."""
    url = sanitize_string(item.get("url") or "#")
    return (
        f"## [{title}]({url})\n\n"
        f"ID: `{sanitize_string(item.get('id'))}`\n\n"
        "---\n\n"
    )


def convert_list_to_markdown(listing: dict) -> str:
    """Render a paginated list (search results, query rows, children).

    The kind of the first result picks the heading. Items matching that kind
    render abbreviated; pages or databases of a different kind render in
    full. Pagination state is appended as a cursor note.
    """
    results = listing.get("results")
    if not isinstance(results, list):
        return "```\nNo results\n```"

    result_type = (_object_kind(results[0]) if results else None) or "unknown"
    markdown = LIST_HEADINGS.get(result_type, "# Results List") + "\n\n"

    for item in results:
        kind = _object_kind(item)

        if kind == "page":
            if result_type == "page":
                title = sanitize_string(extract_page_title(item) or "Untitled")
                markdown += _list_entry(title, item)
            else:
                markdown += convert_page_to_markdown(item) + "\n\n---\n\n"

        elif kind == "database":
            if result_type == "database":
                title = sanitize_string(
                    extract_rich_text(item.get("title") or []) or "Untitled Database"
                )
                markdown += _list_entry(title, item)
            else:
                markdown += convert_database_to_markdown(item) + "\n\n---\n\n"

        elif kind == "block":
            markdown += render_block(item) + "\n\n"

        else:
            markdown += _json_fence(item) + "\n\n"

    if listing.get("has_more"):
        markdown += (
            "\n> More results available. "
            "Use `start_cursor` parameter with the next request.\n"
        )
        if listing.get("next_cursor"):
            markdown += f"> Next cursor: `{sanitize_string(listing['next_cursor'])}`\n"

    return markdown


ENTITY_CONVERTERS: dict[str, Callable[[dict], str]] = {
    "page": convert_page_to_markdown,
    "database": convert_database_to_markdown,
    "block": render_block,
    "list": convert_list_to_markdown,
}


def convert_to_markdown(entity: Any) -> str:
    """Convert a Notion API response to Markdown.

    Dispatches on the entity's `object` field. Unknown or missing kinds fall
    back to a fenced JSON dump. Never raises: any failure during rendering is
    logged and replaced by a fixed message pointing at the JSON format.

    Args:
        entity: Decoded JSON response from the Notion API.

    Returns:
        Markdown formatted string ("" for None and other empty scalars).
    """
    if _is_absent(entity):
        return ""

    try:
        converter = ENTITY_CONVERTERS.get(_object_kind(entity))
        if converter is None:
            return _json_fence(entity)
        return converter(entity)
    except Exception:
        logger.exception("Error in Markdown conversion")
        return MARKDOWN_CONVERSION_ERROR


# =============================================================================
# Markdown → Notion Blocks (Parsy-based)
# =============================================================================

# Notion rejects text content longer than this per rich_text item
MAX_TEXT_LENGTH = 2000


@dataclass
class RichTextSpan:
    """A span of rich text with formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None
    span_type: str = "text"  # text or equation
    expression: Optional[str] = None


def _apply_formatting(spans: list[RichTextSpan], **kwargs) -> list[RichTextSpan]:
    """Set formatting attributes on every span (they are additive)."""
    for span in spans:
        for key, value in kwargs.items():
            setattr(span, key, value)
    return spans


def _merge_adjacent_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent text spans with identical formatting."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if (merged and span.span_type == 'text' and
                merged[-1].span_type == 'text' and
                merged[-1].bold == span.bold and
                merged[-1].italic == span.italic and
                merged[-1].strikethrough == span.strikethrough and
                merged[-1].code == span.code and
                merged[-1].link == span.link):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return [s for s in merged if s.text or s.span_type != 'text']


# Characters that start special syntax (used for literal text boundaries)
_SPECIAL_CHARS = set('\\*~`[$')


def _make_inline_parser():
    """Build the inline Markdown parser using parsy combinators.

    Delimited formats capture their inner content with a regex that stops at
    the closing delimiter, then parse that content recursively.
    """

    def parse_inner(text: str) -> list[RichTextSpan]:
        if not text:
            return [RichTextSpan(text='')]
        try:
            return _inline_parser_impl.parse(text)
        except P.ParseError:
            return [RichTextSpan(text=text)]

    # Escape sequences: \* \~ \` \[ \] \$ \\ etc.
    escaped = (P.string('\\') >> P.char_from('\\*~`[]$_#-')).map(
        lambda c: RichTextSpan(text=c)
    )

    equation = (
        P.string('$') >> P.regex(r'[^$]+') << P.string('$')
    ).map(lambda expr: RichTextSpan(text='', span_type='equation', expression=expr))

    # No nesting inside code
    code = (
        P.string('`') >> P.regex(r'[^`]+') << P.string('`')
    ).map(lambda t: RichTextSpan(text=t, code=True))

    bold = (
        P.string('**') >> P.regex(r'((?:[^*]|\*(?!\*))+)') << P.string('**')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), bold=True))

    strikethrough = (
        P.string('~~') >> P.regex(r'((?:[^~]|~(?!~))+)') << P.string('~~')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), strikethrough=True))

    italic = (
        P.string('*') >> P.regex(r'([^*]+)') << P.string('*')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), italic=True))

    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'(?:[^\[\]]|\[(?:[^\[\]])*\])*')  # Balanced brackets
        yield P.string('](')
        url = yield P.regex(r'[^)\s]+')
        yield P.string(')')
        return _apply_formatting(parse_inner(text), link=url)

    literal_run = P.test_char(lambda c: c not in _SPECIAL_CHARS, 'literal').at_least(1).map(
        lambda chars: RichTextSpan(text=''.join(chars))
    )

    # Special character that didn't start a pattern
    special_fallback = P.any_char.map(lambda c: RichTextSpan(text=c))

    formatted_or_literal = (
        escaped |
        equation |
        code |
        bold |
        strikethrough |
        italic |
        link |
        literal_run |
        special_fallback
    )

    def flatten(items):
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    _inline_parser_impl = formatted_or_literal.many().map(flatten)

    return _inline_parser_impl


# Build the parser once at module load
_inline_parser = _make_inline_parser()


def parse_inline_markdown(text: str) -> list[RichTextSpan]:
    """Parse inline Markdown formatting into rich text spans.

    Args:
        text: A single line of Markdown text.

    Returns:
        List of RichTextSpan objects (empty for empty text).
    """
    if not text:
        return []

    try:
        return _merge_adjacent_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline formatting parse error: {e}")
        return [RichTextSpan(text=text)]


def _chunk_text(text: str) -> list[str]:
    return [text[i:i + MAX_TEXT_LENGTH] for i in range(0, len(text), MAX_TEXT_LENGTH)] or [""]


def spans_to_rich_text(spans: list[RichTextSpan]) -> list[dict]:
    """Convert RichTextSpan list to Notion API rich_text format.

    Text longer than MAX_TEXT_LENGTH is split across several items carrying
    the same annotations and link.
    """
    result = []
    for span in spans:
        if span.span_type == 'equation':
            result.append({
                "type": "equation",
                "equation": {"expression": span.expression or ""}
            })
            continue

        annotations = {}
        if span.bold:
            annotations["bold"] = True
        if span.italic:
            annotations["italic"] = True
        if span.strikethrough:
            annotations["strikethrough"] = True
        if span.code:
            annotations["code"] = True

        for chunk in _chunk_text(span.text):
            obj: dict = {"type": "text", "text": {"content": chunk}}
            if span.link:
                obj["text"]["link"] = {"url": span.link}
            if annotations:
                obj["annotations"] = dict(annotations)
            result.append(obj)

    return result


def _plain_rich_text(text: str) -> list[dict]:
    return spans_to_rich_text([RichTextSpan(text=text)]) if text else []


# Line markers in precedence order (first match wins)
MARKDOWN_BLOCK_MARKERS = [
    (re.compile(r'^### (.*)$'), 'heading_3'),
    (re.compile(r'^## (.*)$'), 'heading_2'),
    (re.compile(r'^# (.*)$'), 'heading_1'),
    (re.compile(r'^(?:---|\*\*\*|___)$'), 'divider'),
    (re.compile(r'^[-*+] \[([ xX])\] (.*)$'), 'to_do'),
    (re.compile(r'^[-*+] (.*)$'), 'bulleted_list_item'),
    (re.compile(r'^\d+\. (.*)$'), 'numbered_list_item'),
    (re.compile(r'^> ?(.*)$'), 'quote'),
]

CODE_FENCE_PATTERN = re.compile(r'^```\s*([\w+#-]*)\s*$')


def _make_block(block_type: str, payload: dict) -> dict:
    return {"object": "block", "type": block_type, block_type: payload}


def _code_block(language: str, lines: list[str]) -> dict:
    return _make_block("code", {
        "rich_text": _plain_rich_text("\n".join(lines)),
        "language": language or "plain text",
    })


def parse_markdown_line(line: str) -> dict:
    """Convert one non-blank Markdown line into a Notion block object."""
    for pattern, block_type in MARKDOWN_BLOCK_MARKERS:
        match = pattern.match(line)
        if not match:
            continue
        if block_type == 'divider':
            return _make_block('divider', {})
        if block_type == 'to_do':
            return _make_block('to_do', {
                "rich_text": spans_to_rich_text(parse_inline_markdown(match.group(2))),
                "checked": match.group(1).lower() == 'x',
            })
        return _make_block(block_type, {
            "rich_text": spans_to_rich_text(parse_inline_markdown(match.group(1))),
        })

    return _make_block('paragraph', {
        "rich_text": spans_to_rich_text(parse_inline_markdown(line)),
    })


def markdown_to_blocks(markdown: str) -> list[dict]:
    """Convert Markdown text into Notion block objects for appending.

    Each non-blank line becomes one block; fenced code spans several lines.
    This is an authoring aid, not the inverse of convert_to_markdown().

    Args:
        markdown: Markdown source text.

    Returns:
        List of Notion block objects.
    """
    blocks: list[dict] = []
    code_language: Optional[str] = None
    code_lines: list[str] = []

    for line in markdown.split("\n"):
        if code_language is not None:
            if line.strip() == "```":
                blocks.append(_code_block(code_language, code_lines))
                code_language = None
                code_lines = []
            else:
                code_lines.append(line)
            continue

        stripped = line.strip()
        if not stripped:
            continue

        fence = CODE_FENCE_PATTERN.match(stripped)
        if fence:
            code_language = fence.group(1)
            continue

        blocks.append(parse_markdown_line(stripped))

    if code_language is not None:
        # Unterminated fence: keep what was collected
        blocks.append(_code_block(code_language, code_lines))

    return blocks


# =============================================================================
# Argument Validation
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)
_CONTROL_CHARS_PATTERN = re.compile(r'[\x00-\x1f\x7f-\x9f]')

MAX_PAGE_SIZE = 100


class InvalidArgumentError(ValueError):
    """A tool argument failed validation."""


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/abc123def456...

    Returns:
        Normalized UUID or None if not found.
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None

    # UUID is at the end of the path, possibly after a title
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        try:
            return normalize_uuid(uuid_match.group(1))
        except ValueError:
            return None
    return None


def validate_id(value: Any, field_name: str = "id") -> str:
    """Validate a Notion object ID and return it as a dashed UUID.

    Accepts a dashed UUID, a 32-character hex ID, or a Notion URL ending in
    one.

    Raises:
        InvalidArgumentError: If the value is not a recognizable ID.
    """
    if not value or not isinstance(value, str):
        raise InvalidArgumentError(f"Invalid {field_name}: ID must be a non-empty string")

    value = value.strip()
    if UUID_PATTERN.match(value):
        return normalize_uuid(value)

    extracted = extract_uuid_from_url(value)
    if extracted:
        return extracted

    raise InvalidArgumentError(
        f"Invalid {field_name} format: ID must be a UUID "
        "(8-4-4-4-12 with hyphens, or 32 hex characters) or a Notion URL"
    )


def validate_pagination(
    start_cursor: Any = None,
    page_size: Any = None
) -> dict:
    """Validate pagination parameters.

    Returns:
        Dict holding only the supplied parameters, cursor stripped of
        control characters.

    Raises:
        InvalidArgumentError: On a non-string cursor or out-of-range size.
    """
    result: dict = {}

    if start_cursor is not None:
        if not isinstance(start_cursor, str):
            raise InvalidArgumentError("Invalid start_cursor: must be a string")
        result["start_cursor"] = _CONTROL_CHARS_PATTERN.sub("", start_cursor)

    if page_size is not None:
        if (isinstance(page_size, bool) or not isinstance(page_size, int)
                or not 1 <= page_size <= MAX_PAGE_SIZE):
            raise InvalidArgumentError(
                f"Invalid page_size: must be a number between 1 and {MAX_PAGE_SIZE}"
            )
        result["page_size"] = page_size

    return result


# =============================================================================
# Notion API Client
# =============================================================================


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None
) -> dict:
    """Make authenticated async request to Notion API with rate limiting and retry.

    Uses a semaphore to limit concurrent requests and exponential backoff
    for rate limit errors (429).

    Raises:
        httpx.HTTPStatusError: On any non-2xx response once retries are spent.
    """
    token = _get_token()
    sem = _get_semaphore()
    client = await _get_async_client()

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    async with sem:
        for attempt in range(MAX_RETRIES):
            if method == "GET":
                response = await client.get(url, headers=headers, params=params)
            elif method == "POST":
                response = await client.post(url, headers=headers, json=json_body or {})
            elif method == "PATCH":
                response = await client.patch(url, headers=headers, json=json_body or {})
            elif method == "DELETE":
                response = await client.delete(url, headers=headers)
            else:
                raise ValueError(f"Unsupported method: {method}")

            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                delay = _compute_retry_delay(
                    attempt, _parse_retry_after(response.headers.get("Retry-After"))
                )
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return response.json()

    raise RuntimeError("unreachable")


def _pagination_params(start_cursor: Optional[str], page_size: Optional[int]) -> dict:
    """Collect the pagination members that were actually supplied."""
    params: dict = {}
    if start_cursor:
        params["start_cursor"] = start_cursor
    if page_size:
        params["page_size"] = page_size
    return params


async def append_block_children_async(
    block_id: str,
    children: list[dict],
    after: Optional[str] = None
) -> dict:
    body: dict = {"children": children}
    if after:
        body["after"] = after
    return await _notion_request_async("PATCH", f"/blocks/{block_id}/children", json_body=body)


async def retrieve_block_async(block_id: str) -> dict:
    return await _notion_request_async("GET", f"/blocks/{block_id}")


async def retrieve_block_children_async(
    block_id: str,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    """Fetch one page of a block's immediate children."""
    return await _notion_request_async(
        "GET",
        f"/blocks/{block_id}/children",
        params=_pagination_params(start_cursor, page_size)
    )


async def delete_block_async(block_id: str) -> dict:
    return await _notion_request_async("DELETE", f"/blocks/{block_id}")


async def update_block_async(block_id: str, block: dict) -> dict:
    return await _notion_request_async("PATCH", f"/blocks/{block_id}", json_body=block)


async def retrieve_page_async(page_id: str) -> dict:
    return await _notion_request_async("GET", f"/pages/{page_id}")


async def update_page_properties_async(page_id: str, properties: dict) -> dict:
    return await _notion_request_async(
        "PATCH", f"/pages/{page_id}", json_body={"properties": properties}
    )


async def list_all_users_async(
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    return await _notion_request_async(
        "GET", "/users", params=_pagination_params(start_cursor, page_size)
    )


async def retrieve_user_async(user_id: str) -> dict:
    return await _notion_request_async("GET", f"/users/{user_id}")


async def retrieve_bot_user_async() -> dict:
    return await _notion_request_async("GET", "/users/me")


async def create_database_async(
    parent: dict,
    properties: dict,
    title: Optional[list] = None
) -> dict:
    body: dict = {"parent": parent, "properties": properties}
    if title is not None:
        body["title"] = title
    return await _notion_request_async("POST", "/databases", json_body=body)


async def query_database_async(
    database_id: str,
    filter_obj: Optional[dict] = None,
    sorts: Optional[list] = None,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    """Query one page of database rows.

    Args:
        database_id: The database UUID.
        filter_obj: Optional Notion filter object.
        sorts: Optional list of sort objects.
        start_cursor: Cursor from a previous response's next_cursor.
        page_size: Rows per page (max 100).

    Returns:
        Notion list object with page results.
    """
    body: dict = {}
    if filter_obj:
        body["filter"] = filter_obj
    if sorts:
        body["sorts"] = sorts
    body.update(_pagination_params(start_cursor, page_size))
    return await _notion_request_async(
        "POST", f"/databases/{database_id}/query", json_body=body
    )


async def retrieve_database_async(database_id: str) -> dict:
    return await _notion_request_async("GET", f"/databases/{database_id}")


async def update_database_async(
    database_id: str,
    title: Optional[list] = None,
    description: Optional[list] = None,
    properties: Optional[dict] = None
) -> dict:
    body: dict = {}
    if title:
        body["title"] = title
    if description:
        body["description"] = description
    if properties:
        body["properties"] = properties
    return await _notion_request_async("PATCH", f"/databases/{database_id}", json_body=body)


async def create_database_item_async(database_id: str, properties: dict) -> dict:
    """Create a page (row) inside a database."""
    return await _notion_request_async("POST", "/pages", json_body={
        "parent": {"database_id": database_id},
        "properties": properties,
    })


async def create_comment_async(
    rich_text: list,
    parent: Optional[dict] = None,
    discussion_id: Optional[str] = None
) -> dict:
    body: dict = {"rich_text": rich_text}
    if parent:
        body["parent"] = parent
    if discussion_id:
        body["discussion_id"] = discussion_id
    return await _notion_request_async("POST", "/comments", json_body=body)


async def retrieve_comments_async(
    block_id: str,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    params = {"block_id": block_id}
    params.update(_pagination_params(start_cursor, page_size))
    return await _notion_request_async("GET", "/comments", params=params)


async def search_async(
    query: Optional[str] = None,
    filter_obj: Optional[dict] = None,
    sort: Optional[dict] = None,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    """Search pages and databases by title."""
    body: dict = {}
    if query:
        body["query"] = query
    if filter_obj:
        body["filter"] = filter_obj
    if sort:
        body["sort"] = sort
    body.update(_pagination_params(start_cursor, page_size))
    return await _notion_request_async("POST", "/search", json_body=body)


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., INVALID_ARGUMENT, NOT_FOUND)
        message: Human-readable description
        hint: Suggestion on how to fix the issue

    Returns:
        Formatted error string, sanitized for display.
    """
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return sanitize_string("\n".join(parts))


# Common error hints
HINTS = {
    "invalid_token": "Token is invalid or expired. Check NOTION_API_TOKEN or the --token-file contents.",
    "missing_capability": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "not_found": "The object may be deleted, in trash, or not shared with this integration. Use notion_search to find it by title.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
}


def _http_status_error(e: httpx.HTTPStatusError) -> str:
    """Map an HTTP status error to a tool error message."""
    status = e.response.status_code if e.response is not None else None
    if status == 401:
        return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
    if status == 403:
        return _error(
            "MISSING_CAPABILITY",
            "Integration lacks access to this object",
            hint=HINTS["missing_capability"]
        )
    if status == 404:
        return _error("NOT_FOUND", "Object not found", hint=HINTS["not_found"])
    if status == 429:
        return _error("RATE_LIMITED", "Too many requests", hint=HINTS["rate_limited"])
    if status is not None:
        return _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e, 100)}")
    return _error("HTTP_ERROR", str(e))


# =============================================================================
# MCP Tools
# =============================================================================

ID_DESCRIPTION = (
    "It should be a 32-character string (excluding hyphens) formatted as "
    "8-4-4-4-12 with hyphens (-)."
)


def format_response(response: Any, output_format: str = "markdown") -> str:
    """Render a Notion response as Markdown or pretty JSON.

    Markdown is produced only when conversion is enabled for this server and
    the caller asked for it.
    """
    if _markdown_enabled and output_format == "markdown":
        return sanitize_string(convert_to_markdown(response))
    return safe_stringify(response)


async def _run_tool(name: str, output_format: str, call: Callable[[], Any]) -> str:
    """Execute a tool body and turn its outcome into response text.

    `call` performs argument validation and returns the API coroutine, so
    validation failures are reported the same way as API failures.
    """
    # Argument values may contain secrets or page content; log the name only
    logger.info(f"Received tool call: {name}")

    try:
        response = await call()
    except InvalidArgumentError as e:
        return _error("INVALID_ARGUMENT", str(e))
    except httpx.HTTPStatusError as e:
        logger.warning(f"{name} failed: {e}")
        return _http_status_error(e)
    except Exception as e:
        logger.exception(f"Error executing tool {name}")
        return _error("UNEXPECTED", f"{type(e).__name__}: {e}")

    return format_response(response, output_format)


async def notion_append_block_children(
    block_id: str,
    children: Optional[list[dict]] = None,
    markdown: Optional[str] = None,
    after: Optional[str] = None,
    format: str = "markdown"
) -> str:
    """Append new children blocks to a specified parent block in Notion.

    Requires insert content capabilities. Optionally specify 'after' to
    append after a certain block.

    Args:
        block_id: The ID of the parent block. It should be a 32-character
            string (excluding hyphens) formatted as 8-4-4-4-12 with hyphens.
        children: Array of block objects following the Notion block schema.
        markdown: Markdown text to convert into blocks, instead of children.
        after: ID of the existing block to append the new blocks after.
        format: "markdown" (default) or "json".
    """
    def call():
        parent_id = validate_id(block_id, "block_id")
        if children is not None:
            if not isinstance(children, list):
                raise InvalidArgumentError("Children must be an array")
            blocks = children
        elif markdown:
            blocks = markdown_to_blocks(markdown)
        else:
            raise InvalidArgumentError(
                "Missing required arguments: block_id and children (or markdown)"
            )
        after_id = validate_id(after, "after") if after else None
        return append_block_children_async(parent_id, blocks, after_id)

    return await _run_tool("notion_append_block_children", format, call)


async def notion_retrieve_block(block_id: str, format: str = "markdown") -> str:
    """Retrieve a block from Notion.

    Args:
        block_id: The ID of the block to retrieve.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_retrieve_block", format,
        lambda: retrieve_block_async(validate_id(block_id, "block_id"))
    )


async def notion_retrieve_block_children(
    block_id: str,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None,
    format: str = "markdown"
) -> str:
    """Retrieve the children of a block.

    Args:
        block_id: The ID of the block.
        start_cursor: Pagination cursor for next page of results.
        page_size: Number of results per page (max 100).
        format: "markdown" (default) or "json".
    """
    def call():
        parent_id = validate_id(block_id, "block_id")
        pagination = validate_pagination(start_cursor, page_size)
        return retrieve_block_children_async(parent_id, **pagination)

    return await _run_tool("notion_retrieve_block_children", format, call)


async def notion_delete_block(block_id: str, format: str = "markdown") -> str:
    """Delete (archive) a block in Notion.

    Args:
        block_id: The ID of the block to delete.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_delete_block", format,
        lambda: delete_block_async(validate_id(block_id, "block_id"))
    )


async def notion_update_block(block_id: str, block: dict, format: str = "markdown") -> str:
    """Update the content of a block based on its type.

    Args:
        block_id: The ID of the block to update.
        block: The updated block content, e.g. {"paragraph": {"rich_text": [...]}}.
        format: "markdown" (default) or "json".
    """
    def call():
        target_id = validate_id(block_id, "block_id")
        if not block:
            raise InvalidArgumentError("Missing required arguments: block_id and block")
        return update_block_async(target_id, block)

    return await _run_tool("notion_update_block", format, call)


async def notion_retrieve_page(page_id: str, format: str = "markdown") -> str:
    """Retrieve a page from Notion.

    Args:
        page_id: The ID of the page to retrieve.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_retrieve_page", format,
        lambda: retrieve_page_async(validate_id(page_id, "page_id"))
    )


async def notion_update_page_properties(
    page_id: str,
    properties: dict,
    format: str = "markdown"
) -> str:
    """Update properties of a page or an item in a Notion database.

    Args:
        page_id: The ID of the page or database item to update.
        properties: Properties to update, keyed by property name.
        format: "markdown" (default) or "json".
    """
    def call():
        target_id = validate_id(page_id, "page_id")
        if not properties:
            raise InvalidArgumentError("Missing required arguments: page_id and properties")
        return update_page_properties_async(target_id, properties)

    return await _run_tool("notion_update_page_properties", format, call)


async def notion_list_all_users(
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None,
    format: str = "markdown"
) -> str:
    """List all users in the Notion workspace.

    Requires an Enterprise plan; guests are not included.

    Args:
        start_cursor: Pagination start cursor for listing users.
        page_size: Number of users to retrieve (max 100).
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_list_all_users", format,
        lambda: list_all_users_async(**validate_pagination(start_cursor, page_size))
    )


async def notion_retrieve_user(user_id: str, format: str = "markdown") -> str:
    """Retrieve a specific user by user_id in Notion.

    Args:
        user_id: The ID of the user to retrieve.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_retrieve_user", format,
        lambda: retrieve_user_async(validate_id(user_id, "user_id"))
    )


async def notion_retrieve_bot_user(format: str = "markdown") -> str:
    """Retrieve the bot user associated with the current token in Notion.

    Args:
        format: "markdown" (default) or "json".
    """
    return await _run_tool("notion_retrieve_bot_user", format, retrieve_bot_user_async)


async def notion_create_database(
    parent: dict,
    properties: dict,
    title: Optional[list[dict]] = None,
    format: str = "markdown"
) -> str:
    """Create a database in Notion.

    Args:
        parent: Parent object of the database, e.g. {"type": "page_id", "page_id": "..."}.
        properties: Property schema keyed by property name.
        title: Title of the database as an array of rich text objects.
        format: "markdown" (default) or "json".
    """
    def call():
        if not isinstance(parent, dict) or not parent:
            raise InvalidArgumentError("Missing required argument: parent")
        checked_parent = dict(parent)
        for key in ("page_id", "database_id"):
            if checked_parent.get(key):
                checked_parent[key] = validate_id(checked_parent[key], f"parent.{key}")
        return create_database_async(checked_parent, properties, title)

    return await _run_tool("notion_create_database", format, call)


async def notion_query_database(
    database_id: str,
    filter: Optional[dict] = None,
    sorts: Optional[list[dict]] = None,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None,
    format: str = "markdown"
) -> str:
    """Query a database in Notion.

    Args:
        database_id: The ID of the database to query.
        filter: Filter conditions.
        sorts: Sort conditions, each with "direction" and "property" or "timestamp".
        start_cursor: Pagination cursor for next page of results.
        page_size: Number of results per page (max 100).
        format: "markdown" (default) or "json".
    """
    def call():
        target_id = validate_id(database_id, "database_id")
        pagination = validate_pagination(start_cursor, page_size)
        return query_database_async(target_id, filter, sorts, **pagination)

    return await _run_tool("notion_query_database", format, call)


async def notion_retrieve_database(database_id: str, format: str = "markdown") -> str:
    """Retrieve a database in Notion.

    Args:
        database_id: The ID of the database to retrieve.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_retrieve_database", format,
        lambda: retrieve_database_async(validate_id(database_id, "database_id"))
    )


async def notion_update_database(
    database_id: str,
    title: Optional[list[dict]] = None,
    description: Optional[list[dict]] = None,
    properties: Optional[dict] = None,
    format: str = "markdown"
) -> str:
    """Update a database in Notion.

    Args:
        database_id: The ID of the database to update.
        title: New title as an array of rich text objects.
        description: New description as an array of rich text objects.
        properties: Property schema changes keyed by property name.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_update_database", format,
        lambda: update_database_async(
            validate_id(database_id, "database_id"), title, description, properties
        )
    )


async def notion_create_database_item(
    database_id: str,
    properties: dict,
    format: str = "markdown"
) -> str:
    """Create a new item (page) in a Notion database.

    Args:
        database_id: The ID of the database to add the item to.
        properties: Properties of the new item, matching the database schema.
        format: "markdown" (default) or "json".
    """
    return await _run_tool(
        "notion_create_database_item", format,
        lambda: create_database_item_async(
            validate_id(database_id, "database_id"), properties
        )
    )


async def notion_create_comment(
    rich_text: list[dict],
    parent: Optional[dict] = None,
    discussion_id: Optional[str] = None,
    format: str = "markdown"
) -> str:
    """Create a comment in Notion.

    Requires 'insert comment' capabilities. Specify either a page parent or
    a discussion_id, but not both.

    Args:
        rich_text: Array of rich text objects representing the comment content.
        parent: Object with the page_id of the page to comment on.
        discussion_id: ID of an existing discussion thread to reply to.
        format: "markdown" (default) or "json".
    """
    def call():
        if not parent and not discussion_id:
            raise InvalidArgumentError(
                "Either parent.page_id or discussion_id must be provided"
            )
        checked_parent = parent
        if isinstance(parent, dict) and parent.get("page_id"):
            checked_parent = {**parent, "page_id": validate_id(parent["page_id"], "parent.page_id")}
        checked_discussion = validate_id(discussion_id, "discussion_id") if discussion_id else None
        return create_comment_async(rich_text, checked_parent, checked_discussion)

    return await _run_tool("notion_create_comment", format, call)


async def notion_retrieve_comments(
    block_id: str,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None,
    format: str = "markdown"
) -> str:
    """Retrieve unresolved comments from a Notion page or block.

    Requires 'read comment' capabilities.

    Args:
        block_id: The ID of the block or page whose comments to retrieve.
        start_cursor: Returns a page of results starting after the cursor.
        page_size: Number of comments to retrieve (max 100).
        format: "markdown" (default) or "json".
    """
    def call():
        target_id = validate_id(block_id, "block_id")
        pagination = validate_pagination(start_cursor, page_size)
        return retrieve_comments_async(target_id, **pagination)

    return await _run_tool("notion_retrieve_comments", format, call)


async def notion_search(
    query: Optional[str] = None,
    filter: Optional[dict] = None,
    sort: Optional[dict] = None,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None,
    format: str = "markdown"
) -> str:
    """Search pages or databases by title in Notion.

    Args:
        query: Text to search for in page or database titles.
        filter: {"property": "object", "value": "page" | "database"}.
        sort: {"direction": "ascending" | "descending", "timestamp": "last_edited_time"}.
        start_cursor: Pagination start cursor.
        page_size: Number of results to return (max 100).
        format: "markdown" (default) or "json".
    """
    def call():
        pagination = validate_pagination(start_cursor, page_size)
        return search_async(
            sanitize_string(query) if query else None, filter, sort, **pagination
        )

    return await _run_tool("notion_search", format, call)


TOOLS = [
    notion_append_block_children,
    notion_retrieve_block,
    notion_retrieve_block_children,
    notion_delete_block,
    notion_update_block,
    notion_retrieve_page,
    notion_update_page_properties,
    notion_list_all_users,
    notion_retrieve_user,
    notion_retrieve_bot_user,
    notion_create_database,
    notion_query_database,
    notion_retrieve_database,
    notion_update_database,
    notion_create_database_item,
    notion_create_comment,
    notion_retrieve_comments,
    notion_search,
]


def parse_enabled_tools(value: Optional[str]) -> set[str]:
    """Parse a comma-separated tool list; empty means every tool."""
    if not value:
        return set()
    return {name.strip() for name in value.split(",") if name.strip()}


def filter_tools(tools: list[Callable], enabled_tools: set[str]) -> list[Callable]:
    """Keep only the tools named in enabled_tools (all when it is empty)."""
    if not enabled_tools:
        return list(tools)

    known = {tool.__name__ for tool in tools}
    for name in sorted(enabled_tools - known):
        logger.warning(f"Ignoring unknown tool in enabled tools: {name}")
    return [tool for tool in tools if tool.__name__ in enabled_tools]


def build_server(enabled_tools: Optional[set[str]] = None) -> FastMCP:
    """Create the MCP server with the enabled subset of tools registered."""
    server = FastMCP("notion-mcp-server", host=HTTP_HOST, port=HTTP_PORT)
    for tool in filter_tools(TOOLS, enabled_tools or set()):
        server.add_tool(tool)
    return server


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    token_loaded = _notion_token is not None

    # If token loaded, try a quick auth check
    auth_status = None
    if token_loaded:
        try:
            result = await retrieve_bot_user_async()
            auth_status = _dig(result, "bot", "workspace_name") or "connected"
        except Exception as e:
            auth_status = f"error: {type(e).__name__}"

    return JSONResponse({
        "status": "ok",
        "token_loaded": token_loaded,
        "markdown": _markdown_enabled,
        "workspace": auth_status,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def _load_token(token_file: Optional[str]) -> str:
    """Read the API token from --token-file or NOTION_API_TOKEN.

    Raises:
        SystemExit: If no non-empty token is available.
    """
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        source = str(token_path)
    else:
        token = os.environ.get("NOTION_API_TOKEN", "").strip()
        source = "NOTION_API_TOKEN"

    if not token:
        logger.error("Please set NOTION_API_TOKEN environment variable or pass --token-file")
        raise SystemExit(1)

    logger.info(f"Notion token loaded from {source}")
    return token


def main():
    """Run the Notion MCP server.

    Supports two transport modes:
    - stdio (default): for MCP clients that launch the process directly
    - http: standalone server on localhost:2052

    Usage:
        notion-mcp-server                                # stdio
        notion-mcp-server --http --markdown              # HTTP, Markdown output
        notion-mcp-server --enabled-tools notion_search,notion_retrieve_page
    """
    parser = argparse.ArgumentParser(description="Notion MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: $NOTION_API_TOKEN)"
    )
    parser.add_argument(
        "--enabled-tools",
        default=os.environ.get("NOTION_ENABLED_TOOLS", ""),
        help="Comma-separated list of tools to enable (default: all)"
    )
    parser.add_argument(
        "--markdown",
        action="store_true",
        help="Enable Markdown responses (same as NOTION_MARKDOWN_CONVERSION=true)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help=f"Run as HTTP server on {HTTP_HOST}:{HTTP_PORT} instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token, _markdown_enabled
    _notion_token = _load_token(args.token_file)
    _markdown_enabled = (
        args.markdown or os.environ.get("NOTION_MARKDOWN_CONVERSION") == "true"
    )

    server = build_server(parse_enabled_tools(args.enabled_tools))

    if args.http:
        import uvicorn

        app = server.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting Notion MCP server on http://{HTTP_HOST}:{HTTP_PORT}")
        uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT, log_level="warning")
    else:
        server.run()


if __name__ == "__main__":
    main()
