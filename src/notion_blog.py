"""Notion-backed blog with an annotated markdown content model.

A Notion database serves as a headless CMS. Page block trees are encoded
into markdown extended with ``:::name{attrs}`` directives, and that
markdown is rendered back to HTML with the same directive vocabulary:

- Encoder: Notion blocks -> annotated markdown (block_to_markdown)
- Decoder: annotated markdown -> HTML (render_markdown)

Exposed through MCP tools (blog_list_posts, blog_read_post,
blog_check_auth) and, in --http mode, a handful of JSON routes.

Token: Passed via --token-file <path> CLI argument at startup.
"""

import asyncio
import hashlib
import hmac
import html
import json
import logging
import math
import random
import re
import time
import unicodedata
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import quote, urlparse

import httpx
import mistune
from bs4 import BeautifulSoup
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

logger = logging.getLogger("notion-blog")

# =============================================================================
# Async Rate Limiting
# =============================================================================

# Semaphore to limit concurrent Notion API requests
_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)


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
# Configuration
# =============================================================================

# All of these are loaded once by main() from --*-file arguments.
_notion_token: Optional[str] = None
_blog_database_id: Optional[str] = None
_webhook_secret: Optional[str] = None
_revalidate_secret: Optional[str] = None


def _get_token() -> str:
    """Get the Notion token (set via --token-file CLI arg)."""
    if _notion_token is None:
        raise RuntimeError(
            "No Notion token. Pass --token-file <path> on the command line."
        )
    return _notion_token


def validate_notion_config() -> bool:
    """Return True when both the token and the blog database are configured."""
    return bool(_notion_token) and bool(_blog_database_id)


UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID.
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def parse_notion_id(ref: str) -> Optional[str]:
    """Resolve a database/page reference (UUID or Notion URL) to a UUID.

    Handles:
    - abc123def456... (32 hex chars, with or without dashes)
    - https://www.notion.so/workspace/Blog-abc123def456...?v=...

    Returns:
        Normalized UUID or None if the reference is not recognised.
    """
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)

    match = NOTION_URL_PATTERN.match(ref)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def _same_notion_id(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.replace('-', '').lower() == b.replace('-', '').lower()


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make authenticated async request to Notion API with rate limiting and retry.

    Uses a semaphore to limit concurrent requests and exponential backoff
    for rate limit errors (429).
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
            try:
                if method == "GET":
                    response = await client.get(url, headers=headers)
                elif method == "POST":
                    response = await client.post(url, headers=headers, json=json_body or {})
                else:
                    raise ValueError(f"Unsupported method: {method}")

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
                    delay = _compute_retry_delay(attempt, retry_after)
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429 and attempt < MAX_RETRIES - 1:
                    delay = _compute_retry_delay(attempt)
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue
                raise

        raise httpx.HTTPStatusError(
            f"Max retries ({MAX_RETRIES}) exceeded",
            request=None,
            response=None
        )


# =============================================================================
# Rich Text
# =============================================================================
# Notion rich-text spans -> inline markdown. Annotation wrapping order is
# fixed (bold, italic, strikethrough, underline, code, color, link) so the
# same span always produces the same bytes.


def get_mention_content(mention: Optional[dict]) -> str:
    """Render a mention span as inline markdown. Never raises."""
    if not isinstance(mention, dict) or not mention.get("type"):
        return "@mention"

    kind = mention["type"]
    payload = mention.get(kind) or {}

    if kind == "user":
        return f"@{payload.get('name') or payload.get('id') or 'User'}"
    if kind == "page":
        return f"[Page](notion://page/{payload.get('id', '')})"
    if kind == "database":
        return f"[Database](notion://database/{payload.get('id', '')})"
    if kind == "date":
        start = payload.get("start")
        if not start:
            return "[Date]"
        end = payload.get("end")
        return f"{start} → {end}" if end else start
    if kind == "link_preview":
        url = payload.get("url")
        return f"[{url}]({url})" if url else "[Link Preview]"
    if kind == "link_mention":
        href = payload.get("href")
        if not href:
            return "@mention"
        return f"[{payload.get('title') or href}]({href})"
    if kind == "template_mention":
        template_type = payload.get("type")
        if template_type == "template_mention_date":
            return payload.get("template_mention_date") or "[Date]"
        if template_type == "template_mention_user":
            return payload.get("template_mention_user") or "[User]"
        return "[Template]"
    return "@mention"


def _apply_annotations(text: str, annotations: dict) -> str:
    if annotations.get("bold"):
        text = f"**{text}**"
    if annotations.get("italic"):
        text = f"*{text}*"
    if annotations.get("strikethrough"):
        text = f"~~{text}~~"
    if annotations.get("underline"):
        text = f"<u>{text}</u>"
    if annotations.get("code"):
        text = f"`{text}`"
    color = annotations.get("color")
    if color and color != "default":
        text = f'<span class="notion-{color}">{text}</span>'
    return text


def rich_text_to_markdown(rich_text: Optional[list[dict]]) -> str:
    """Convert a Notion rich_text array to annotated inline markdown.

    Args:
        rich_text: List of Notion rich text span objects.

    Returns:
        Concatenated markdown; empty string for empty or malformed input.
    """
    if not isinstance(rich_text, list):
        return ""

    parts = []
    for item in rich_text:
        if not isinstance(item, dict):
            continue

        kind = item.get("type", "text")
        text_obj = item.get("text") or {}
        if kind == "text":
            text = text_obj.get("content", "")
        elif kind == "mention":
            text = get_mention_content(item.get("mention"))
        elif kind == "equation":
            text = f"${(item.get('equation') or {}).get('expression', '')}$"
        else:
            text = item.get("plain_text", "")

        if not text:
            continue
        text = _apply_annotations(text, item.get("annotations") or {})

        # Only text spans carry link targets; mention hrefs are already rendered
        if kind == "text":
            link = item.get("href") or (text_obj.get("link") or {}).get("url")
            if link:
                text = f"[{text}]({link})"

        parts.append(text)
    return "".join(parts)


def get_plain_text(rich_text: Optional[list[dict]]) -> str:
    """Join the plain_text of every span, rendering equations as $expr$."""
    if not isinstance(rich_text, list):
        return ""
    parts = []
    for item in rich_text:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "equation":
            parts.append(f"${(item.get('equation') or {}).get('expression', '')}$")
        else:
            parts.append(item.get("plain_text") or (item.get("text") or {}).get("content", ""))
    return "".join(parts)


WORDS_PER_MINUTE = 200

# Applied in order; code fences and block math go before their inline forms
_EXCERPT_STRIP_PATTERNS = [
    (re.compile(r'```[\s\S]*?```'), ''),
    (re.compile(r'\$\$[\s\S]*?\$\$'), ''),
    (re.compile(r'^:::.*$', re.MULTILINE), ''),
    (re.compile(r'#{1,6}\s+'), ''),
    (re.compile(r'\*\*(.*?)\*\*'), r'\1'),
    (re.compile(r'\*(.*?)\*'), r'\1'),
    (re.compile(r'`(.*?)`'), r'\1'),
    (re.compile(r'\$(.*?)\$'), ''),
    (re.compile(r'!\[.*?\]\(.*?\)'), ''),
    (re.compile(r'\[(.*?)\]\(.*?\)'), r'\1'),
    (re.compile(r'<[^>]+>'), ''),
    (re.compile(r'>\s+'), ''),
    (re.compile(r'^\s*[-*+]\s+(\[[ x]\]\s+)?', re.MULTILINE), ''),
    (re.compile(r'^\s*\d+\.\s+', re.MULTILINE), ''),
    (re.compile(r'\s+'), ' '),
]


def generate_excerpt_from_content(content: str, max_length: int = 200) -> str:
    """Build a plain-text excerpt from emitted markdown.

    Markdown syntax is stripped, then the text is cut at the last word
    boundary before max_length and suffixed with "...".
    """
    text = content
    for pattern, replacement in _EXCERPT_STRIP_PATTERNS:
        text = pattern.sub(replacement, text)
    text = text.strip()

    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')
    if last_space > 0:
        truncated = truncated[:last_space]
    return truncated + "..."


def calculate_read_time(content: str) -> int:
    """Estimated reading time in whole minutes (200 words per minute)."""
    return math.ceil(len(content.split()) / WORDS_PER_MINUTE)


# =============================================================================
# Media & URLs
# =============================================================================

# Hosts whose URLs are short-lived signed links and must go through the proxy
NOTION_STORAGE_HOSTS = ("notion.so", "amazonaws.com")
IMAGE_PROXY_PATH = "/api/image-proxy"
IMAGE_PROXY_ALLOWED_HOSTS = NOTION_STORAGE_HOSTS + ("images.unsplash.com",)

# Characters left unescaped when a URL is embedded as a query value
URI_COMPONENT_SAFE = "!~*'()"

DEFAULT_PAGE_ICON = "📄"
DEFAULT_CALLOUT_ICON = "💡"
DEFAULT_TAG_COLOR = "4F46E5"

TAG_COLORS = {
    "Next.js": "000000",
    "React": "61DAFB",
    "TypeScript": "3178C6",
    "JavaScript": "F7DF1E",
    "Node.js": "339933",
    "CSS": "1572B6",
    "HTML": "E34F26",
    "Vue": "4FC08D",
    "Angular": "DD0031",
    "Python": "3776AB",
    "Java": "ED8B00",
    "Go": "00ADD8",
    "Rust": "000000",
    "PHP": "777BB4",
    "Ruby": "CC342D",
    "Swift": "FA7343",
    "Kotlin": "0095D5",
    "C++": "00599C",
    "C#": "239120",
    "DevOps": "FF6B6B",
    "AWS": "FF9900",
    "Docker": "2496ED",
    "Kubernetes": "326CE5",
    "Git": "F05032",
    "Linux": "FCC624",
    "Database": "336791",
    "API": "4CAF50",
    "Frontend": "FF69B4",
    "Backend": "8A2BE2",
    "Mobile": "FF4081",
    "Web": "2196F3",
    "Design": "E91E63",
    "UI/UX": "FF5722",
    "Testing": "9C27B0",
    "Security": "F44336",
    "Performance": "FF9800",
    "Tutorial": "4CAF50",
    "Guide": "2196F3",
    "Tips": "FF5722",
    "News": "FF9800",
    "Review": "9C27B0",
    "Opinion": "607D8B",
    "Blog": "4F46E5",
}


def get_file_url(file_obj: Optional[dict]) -> Optional[str]:
    """Resolve an external or Notion-hosted file reference to its URL."""
    if not isinstance(file_obj, dict):
        return None
    kind = file_obj.get("type")
    if kind in ("external", "file"):
        return (file_obj.get(kind) or {}).get("url") or None
    return None


def get_cover_image(cover: Optional[dict]) -> Optional[str]:
    """Resolve a page cover to its URL."""
    return get_file_url(cover)


def _host_matches(host: str, allowed: tuple[str, ...]) -> bool:
    host = host.lower()
    return any(host == h or host.endswith("." + h) for h in allowed)


def optimize_image_url(url: Optional[str]) -> str:
    """Route Notion-hosted media through the image proxy.

    Signed storage URLs expire, so they are rewritten to
    /api/image-proxy?url=<percent-encoded original>. Anything else is
    returned unchanged; empty input stays empty.
    """
    if not url:
        return ""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return url
    if _host_matches(host, NOTION_STORAGE_HOSTS):
        return f"{IMAGE_PROXY_PATH}?url={quote(url, safe=URI_COMPONENT_SAFE)}"
    return url


def get_icon_data(icon: Optional[dict]) -> dict:
    """Describe a page/callout icon as {"type": ..., "emoji"|"url": ...}."""
    if isinstance(icon, dict):
        kind = icon.get("type")
        if kind == "emoji" and icon.get("emoji"):
            return {"type": "emoji", "emoji": icon["emoji"]}
        if kind in ("external", "file"):
            url = (icon.get(kind) or {}).get("url")
            if url:
                return {"type": kind, "url": url}
    return {"type": "emoji", "emoji": DEFAULT_PAGE_ICON}


def resolve_icon(icon: Optional[dict], default: str = DEFAULT_CALLOUT_ICON) -> str:
    """Icon as a single string: emoji, external URL, hosted URL, or default."""
    if isinstance(icon, dict):
        kind = icon.get("type")
        if kind == "emoji" and icon.get("emoji"):
            return icon["emoji"]
        if kind in ("external", "file"):
            url = (icon.get(kind) or {}).get("url")
            if url:
                return url
    return default


def get_color_from_tag(tag: str) -> str:
    """Hex background color for a tag (case-sensitive lookup)."""
    return TAG_COLORS.get(tag, DEFAULT_TAG_COLOR)


def generate_thumbnail(title: str, tags: list[str]) -> str:
    """Placeholder thumbnail URL colored after the post's first tag."""
    color = get_color_from_tag(tags[0] if tags else "Blog")
    return f"https://via.placeholder.com/1200x630/{color}/FFFFFF?text={quote(title[:50], safe=URI_COMPONENT_SAFE)}"


# =============================================================================
# Block Fetching
# =============================================================================

BLOCK_PAGE_SIZE = 100

# Block types whose children belong to the block itself. child_page is
# excluded: its children are a separate document.
PARENT_BLOCK_TYPES = {
    'paragraph', 'heading_1', 'heading_2', 'heading_3',
    'bulleted_list_item', 'numbered_list_item', 'to_do',
    'toggle', 'quote', 'callout', 'column_list', 'column',
    'synced_block', 'template', 'table'
}


async def fetch_block_children_async(block_id: str) -> list[dict]:
    """Fetch the immediate children of a block, following every cursor.

    Pages are requested BLOCK_PAGE_SIZE at a time and concatenated in
    cursor order. A failed request stops pagination: the children gathered
    so far are returned and a warning is logged.
    """
    blocks: list[dict] = []
    start_cursor = None

    while True:
        endpoint = f"/blocks/{block_id}/children?page_size={BLOCK_PAGE_SIZE}"
        if start_cursor:
            endpoint += f"&start_cursor={start_cursor}"

        try:
            result = await _notion_request_async("GET", endpoint)
        except httpx.HTTPError as e:
            logger.warning(
                f"Failed to fetch children of {block_id} after {len(blocks)} blocks: {e}"
            )
            break

        blocks.extend(result.get("results", []))

        if not result.get("has_more") or not result.get("next_cursor"):
            break
        start_cursor = result["next_cursor"]

    return blocks


def _needs_children(block: dict) -> bool:
    if not block.get("has_children") or block.get("type") not in PARENT_BLOCK_TYPES:
        return False
    # A synced copy is rendered as a back-reference, its content is not read
    if block["type"] == "synced_block" and (block.get("synced_block") or {}).get("synced_from"):
        return False
    return True


async def prefetch_block_tree_async(block_id: str, depth: int = 10) -> list[dict]:
    """Fetch a block tree breadth-first, attaching children as ``_children``.

    Every level is fetched with parallel requests, which is much faster
    than walking the tree depth-first. The encoder uses ``_children``
    instead of fetching again.

    Args:
        block_id: The page or parent block ID.
        depth: Maximum nesting depth to fetch.

    Returns:
        Top-level blocks with descendants populated.
    """
    if depth <= 0:
        return []

    blocks = await fetch_block_children_async(block_id)

    current_depth = 1
    current_level_blocks = blocks

    while current_depth < depth:
        blocks_needing_children = [b for b in current_level_blocks if _needs_children(b)]
        if not blocks_needing_children:
            break

        children_lists = await asyncio.gather(*[
            fetch_block_children_async(b["id"])
            for b in blocks_needing_children
        ])

        next_level_blocks = []
        for block, children in zip(blocks_needing_children, children_lists):
            block["_children"] = children
            next_level_blocks.extend(children)

        current_level_blocks = next_level_blocks
        current_depth += 1

    return blocks


async def get_block_children(block: dict) -> list[dict]:
    """Children of a block: prefetched ``_children`` or a paginated fetch."""
    children = block.get("_children")
    if children is not None:
        return children
    if not block.get("has_children") or not block.get("id"):
        return []
    return await fetch_block_children_async(block["id"])


# =============================================================================
# Markdown Encoder
# =============================================================================
# Notion block tree -> annotated markdown. Blocks without a plain markdown
# equivalent become directives:
#
#   :::name{key="value" ...}
#   body
#   :::
#
# Attribute values never contain a newline or a raw double quote.


def _directive_attr(value: Any) -> str:
    text = str(value).replace("\r", " ").replace("\n", " ")
    return text.replace('"', "&quot;")


def _directive_open(name: str, **attrs: Any) -> str:
    parts = [f'{key.replace("_", "-")}="{_directive_attr(value)}"' for key, value in attrs.items()]
    if not parts:
        return f":::{name}\n"
    return f":::{name}{{{' '.join(parts)}}}\n"


# Text lines that would read as a directive opener or closer
_DIRECTIVE_LIKE_START = re.compile(r'^([ \t]*):::', re.MULTILINE)
_DIRECTIVE_LIKE_END = re.compile(r'([ \t]):::([ \t]*)$', re.MULTILINE)


def _escape_directive_lines(text: str) -> str:
    """Backslash-escape ``:::`` at the start or end of a line of block text."""
    text = _DIRECTIVE_LIKE_START.sub(r'\1\\:::', text)
    return _DIRECTIVE_LIKE_END.sub(r'\1\\:::\2', text)


def _block_text(data: dict) -> str:
    return _escape_directive_lines(rich_text_to_markdown(data.get("rich_text")))


def _color_suffix(data: dict) -> str:
    color = data.get("color")
    if color and color != "default":
        return f" {{.notion-{color}}}"
    return ""


async def _children_markdown(block: dict, indent: str = "") -> str:
    """Encode a block's children concurrently, joined in document order."""
    children = await get_block_children(block)
    if not children:
        return ""
    parts = await asyncio.gather(*[
        block_to_markdown(child, indent) for child in children
    ])
    return "".join(parts)


async def _encode_paragraph(block: dict, data: dict, indent: str) -> str:
    text = _block_text(data)
    children = await _children_markdown(block, indent)
    return f"{indent}{text}{_color_suffix(data)}\n\n{children}"


async def _encode_heading(block: dict, data: dict, indent: str) -> str:
    level = int(block["type"][-1])
    text = _block_text(data)
    heading = f"{'#' * level} {text}{_color_suffix(data)}\n\n"
    children = await _children_markdown(block)

    if data.get("is_toggleable"):
        return f'{_directive_open("toggle-heading", level=level)}{heading}{children}:::\n\n'
    return heading + children


async def _encode_bulleted_list_item(block: dict, data: dict, indent: str) -> str:
    text = _block_text(data)
    children = await _children_markdown(block, indent + "  ")
    return f"{indent}- {text}{_color_suffix(data)}\n{children}"


async def _encode_numbered_list_item(block: dict, data: dict, indent: str) -> str:
    text = _block_text(data)
    children = await _children_markdown(block, indent + "   ")
    return f"{indent}1. {text}{_color_suffix(data)}\n{children}"


async def _encode_to_do(block: dict, data: dict, indent: str) -> str:
    text = _block_text(data)
    mark = "x" if data.get("checked") else " "
    children = await _children_markdown(block, indent + "  ")
    return f"{indent}- [{mark}] {text}\n{children}"


async def _encode_toggle(block: dict, data: dict, indent: str) -> str:
    attrs = {"summary": rich_text_to_markdown(data.get("rich_text"))}
    color = data.get("color")
    if color and color != "default":
        attrs["color"] = color
    children = await _children_markdown(block, indent)
    return f"{_directive_open('toggle', **attrs)}{children}:::\n\n"


async def _encode_code(block: dict, data: dict, indent: str) -> str:
    language = data.get("language") or ""
    if language == "plain text":
        language = "text"
    code = get_plain_text(data.get("rich_text"))
    caption = rich_text_to_markdown(data.get("caption"))
    result = f"```{language}\n{code}\n```\n"
    if caption:
        result += f"*{caption}*\n"
    return result + "\n"


async def _encode_quote(block: dict, data: dict, indent: str) -> str:
    text = _block_text(data)
    children = await _children_markdown(block, indent + "> ")
    return f"{indent}> {text}{_color_suffix(data)}\n\n{children}"


async def _encode_callout(block: dict, data: dict, indent: str) -> str:
    icon = resolve_icon(data.get("icon"))
    color = data.get("color") or "default"
    text = _block_text(data)
    children = await _children_markdown(block)
    return f"{_directive_open('callout', icon=icon, color=color)}{text}\n\n{children}:::\n\n"


async def _encode_divider(block: dict, data: dict, indent: str) -> str:
    return "---\n\n"


async def _encode_image(block: dict, data: dict, indent: str) -> str:
    url = optimize_image_url(get_file_url(data))
    caption = get_plain_text(data.get("caption"))
    return f"{indent}![{caption}]({url})\n\n"


# Media block type -> (directive name, default title)
MEDIA_DIRECTIVES = {
    "video": ("video", "Video"),
    "audio": ("audio", "Audio"),
    "file": ("file", "File"),
    "pdf": ("file", "PDF"),
}


async def _encode_media(block: dict, data: dict, indent: str) -> str:
    name, default_title = MEDIA_DIRECTIVES[block["type"]]
    url = optimize_image_url(get_file_url(data))
    title = get_plain_text(data.get("caption")) or data.get("name") or default_title
    return f"{_directive_open(name, url=url, title=title)}:::\n\n"


async def _encode_bookmark(block: dict, data: dict, indent: str) -> str:
    caption = get_plain_text(data.get("caption")) or "Bookmark"
    return f"[{caption}]({data.get('url', '')})\n\n"


async def _encode_link_preview(block: dict, data: dict, indent: str) -> str:
    return f"[Link Preview]({data.get('url', '')})\n\n"


async def _encode_embed(block: dict, data: dict, indent: str) -> str:
    attrs = {"url": data.get("url", "")}
    caption = get_plain_text(data.get("caption"))
    if caption:
        attrs["caption"] = caption
    return f"{_directive_open('embed', **attrs)}:::\n\n"


async def _encode_equation(block: dict, data: dict, indent: str) -> str:
    return f"$${data.get('expression', '')}$$\n\n"


async def _encode_table(block: dict, data: dict, indent: str) -> str:
    return f"\n{await table_to_markdown(block)}\n"


async def _encode_table_row(block: dict, data: dict, indent: str) -> str:
    # Rows are emitted by their table
    return ""


async def _encode_column_list(block: dict, data: dict, indent: str) -> str:
    children = await _children_markdown(block)
    return f":::columns\n{children}:::\n\n"


async def _encode_column(block: dict, data: dict, indent: str) -> str:
    children = await _children_markdown(block)
    return f":::column\n{children}:::\n"


async def _encode_child_page(block: dict, data: dict, indent: str) -> str:
    title = data.get("title") or "Untitled"
    return f"[📄 {title}](notion://page/{block.get('id', '')})\n\n"


async def _encode_child_database(block: dict, data: dict, indent: str) -> str:
    title = data.get("title") or "Untitled Database"
    return f"[🗃️ {title}](notion://database/{block.get('id', '')})\n\n"


async def _encode_table_of_contents(block: dict, data: dict, indent: str) -> str:
    color = data.get("color")
    if color and color != "default":
        return f"{_directive_open('table-of-contents', color=color)}:::\n\n"
    return ":::table-of-contents\n:::\n\n"


async def _encode_breadcrumb(block: dict, data: dict, indent: str) -> str:
    return ":::breadcrumb\n:::\n\n"


async def _encode_link_to_page(block: dict, data: dict, indent: str) -> str:
    target_type = data.get("type") or "page_id"
    kind = target_type.removesuffix("_id")
    return f"[🔗 Link to {kind}](notion://{kind}/{data.get(target_type, '')})\n\n"


async def _encode_synced_block(block: dict, data: dict, indent: str) -> str:
    synced_from = data.get("synced_from")
    if synced_from:
        return f"[🔄 Synced from: {synced_from.get('block_id', '')}]\n\n"
    return await _children_markdown(block, indent)


async def _encode_template(block: dict, data: dict, indent: str) -> str:
    title = rich_text_to_markdown(data.get("rich_text")) or "Template"
    children = await _children_markdown(block)
    return f"{_directive_open('template', title=title)}{children}:::\n\n"


async def _encode_unsupported(block: dict, data: dict, indent: str) -> str:
    return "[❌ Unsupported block type]\n\n"


async def _encode_unknown(block: dict, data: dict, indent: str) -> str:
    rich_text = data.get("rich_text")
    if rich_text:
        return f"{_escape_directive_lines(rich_text_to_markdown(rich_text))}{_color_suffix(data)}\n\n"
    return f"[⚠️ Unknown block type: {block['type']}]\n\n"


BLOCK_ENCODERS: dict[str, Callable] = {
    "paragraph": _encode_paragraph,
    "heading_1": _encode_heading,
    "heading_2": _encode_heading,
    "heading_3": _encode_heading,
    "bulleted_list_item": _encode_bulleted_list_item,
    "numbered_list_item": _encode_numbered_list_item,
    "to_do": _encode_to_do,
    "toggle": _encode_toggle,
    "code": _encode_code,
    "quote": _encode_quote,
    "callout": _encode_callout,
    "divider": _encode_divider,
    "image": _encode_image,
    "video": _encode_media,
    "audio": _encode_media,
    "file": _encode_media,
    "pdf": _encode_media,
    "bookmark": _encode_bookmark,
    "link_preview": _encode_link_preview,
    "embed": _encode_embed,
    "equation": _encode_equation,
    "table": _encode_table,
    "table_row": _encode_table_row,
    "column_list": _encode_column_list,
    "column": _encode_column,
    "child_page": _encode_child_page,
    "child_database": _encode_child_database,
    "table_of_contents": _encode_table_of_contents,
    "breadcrumb": _encode_breadcrumb,
    "link_to_page": _encode_link_to_page,
    "synced_block": _encode_synced_block,
    "template": _encode_template,
    "unsupported": _encode_unsupported,
}


async def block_to_markdown(block: dict, indent: str = "") -> str:
    """Encode one block (and its descendants) as annotated markdown.

    Failures are isolated per block: a block that cannot be encoded is
    replaced by an inline error marker and its siblings are unaffected.

    Args:
        block: Notion block object, optionally with ``_children``.
        indent: Prefix for list nesting or quote continuation.

    Returns:
        Markdown fragment, terminated by its own trailing newline(s).
    """
    block_type = block.get("type") if isinstance(block, dict) else None
    if not block_type:
        return ""

    try:
        data = block.get(block_type) or {}
        encoder = BLOCK_ENCODERS.get(block_type, _encode_unknown)
        return await encoder(block, data, indent)
    except Exception as e:
        logger.error(f"Error processing block {block.get('id')} ({block_type}): {type(e).__name__}: {e}")
        return f"[⚠️ Error processing block: {block_type}]\n\n"


async def render_blocks_to_markdown(blocks: list[dict]) -> str:
    """Encode sibling blocks concurrently and join them in order."""
    parts = await asyncio.gather(*[block_to_markdown(b) for b in blocks])
    return "".join(parts)


_MISSING = object()


async def _cached(cache: Optional["ContentCache"], key: str, ttl: float, tags: tuple[str, ...], load):
    """Read-through cache helper; failures (exceptions) are never cached."""
    if cache is not None:
        value = cache.get(key, _MISSING)
        if value is not _MISSING:
            return value
    value = await load()
    if cache is not None:
        cache.set(key, value, ttl, tags)
    return value


async def get_page_content(page_id: str, cache: Optional["ContentCache"] = None) -> str:
    """Full annotated markdown of a page."""
    async def load() -> str:
        blocks = await prefetch_block_tree_async(page_id)
        return await render_blocks_to_markdown(blocks)

    return await _cached(
        cache, f"page-content:{page_id}", CONTENT_TTL, (TAG_NOTION_BLOG, TAG_NOTION_CONTENT), load
    )


async def extract_first_image(page_id: str, cache: Optional["ContentCache"] = None) -> Optional[str]:
    """Proxied URL of the first top-level image block of a page, if any."""
    async def load() -> Optional[str]:
        for block in await fetch_block_children_async(page_id):
            if block.get("type") == "image":
                url = get_file_url(block.get("image"))
                return optimize_image_url(url) if url else None
        return None

    return await _cached(
        cache, f"first-image:{page_id}", IMAGE_TTL, (TAG_NOTION_BLOG, TAG_NOTION_IMAGES), load
    )


# =============================================================================
# Table Encoder
# =============================================================================

EMPTY_CELL = "\u00a0"


def _table_cell(cell: list[dict]) -> str:
    text = rich_text_to_markdown(cell)
    text = text.replace("|", "\\|").replace("\n", "<br>").strip()
    return text or EMPTY_CELL


def _table_line(cells: list[str]) -> str:
    return "| " + " | ".join(cells) + " |\n"


def _table_separator(cell_count: int, has_row_header: bool) -> str:
    cells = [":---" if i == 0 and has_row_header else "---" for i in range(cell_count)]
    return _table_line(cells)


async def table_to_markdown(block: dict) -> str:
    """Encode a table block as a pipe table.

    Rows are the table's table_row children. Every row is padded to the
    declared table_width (or its own length, if longer); empty cells hold
    a non-breaking space so the row survives markdown parsing. A header
    separator follows the first row when the table has a column header.
    """
    data = block.get("table") or {}
    width = data.get("table_width") or 0
    has_column_header = bool(data.get("has_column_header"))
    has_row_header = bool(data.get("has_row_header"))

    try:
        children = await get_block_children(block)
        rows = [
            (child.get("table_row") or {}).get("cells") or []
            for child in children
            if child.get("type") == "table_row"
        ]

        if not rows:
            cell_count = max(width, 1)
            result = _table_line([EMPTY_CELL] * cell_count)
            if has_column_header:
                result += _table_separator(cell_count, has_row_header)
            return result

        lines = []
        for index, cells in enumerate(rows):
            cell_count = max(width, len(cells))
            rendered = [_table_cell(cell) for cell in cells]
            rendered += [EMPTY_CELL] * (cell_count - len(rendered))
            lines.append(_table_line(rendered))
            if index == 0 and has_column_header:
                lines.append(_table_separator(cell_count, has_row_header))
        return "".join(lines)

    except Exception as e:
        logger.error(f"Error processing table {block.get('id')}: {type(e).__name__}: {e}")
        summary = f"Table with {width} columns"
        if has_column_header:
            summary += " (with headers)"
        if has_row_header:
            summary += " (with row headers)"
        return f"**[{summary}]**\n"


# =============================================================================
# Blog Posts
# =============================================================================

@dataclass
class BlogPost:
    """A published post read from the blog database."""
    id: str
    title: str
    slug: str
    excerpt: str
    content: str
    date: str
    tags: list[str] = field(default_factory=list)
    read_time: int = 0  # minutes
    cover_image: Optional[str] = None
    published: bool = False

    def to_dict(self, include_content: bool = True) -> dict:
        data = asdict(self)
        if not include_content:
            del data["content"]
        return data


def _page_property(page: dict, name: str, prop_type: str) -> Any:
    prop = (page.get("properties") or {}).get(name) or {}
    if prop.get("type") != prop_type:
        return None
    return prop.get(prop_type)


def get_post_title(page: dict) -> str:
    return get_plain_text(_page_property(page, "Title", "title"))


def get_post_slug(page: dict) -> str:
    return get_plain_text(_page_property(page, "Slug", "rich_text"))


def get_post_excerpt(page: dict) -> str:
    return get_plain_text(_page_property(page, "Excerpt", "rich_text"))


def get_post_date(page: dict) -> str:
    return (_page_property(page, "Date", "date") or {}).get("start") or ""


def get_post_tags(page: dict) -> list[str]:
    options = _page_property(page, "Tags", "multi_select") or []
    return [option.get("name") for option in options if option.get("name")]


def get_post_published(page: dict) -> bool:
    return bool(_page_property(page, "Published", "checkbox"))


def notion_page_to_blog_post(
    page: dict,
    content: str,
    first_image_url: Optional[str] = None
) -> BlogPost:
    """Build a BlogPost from a database page and its encoded content.

    Missing properties degrade to empty values. The excerpt falls back to
    one generated from the content. Thumbnail priority is the page cover,
    then the first image in the content, then a generated placeholder.
    """
    title = get_post_title(page)
    tags = get_post_tags(page)

    excerpt = get_post_excerpt(page)
    if not excerpt and content:
        excerpt = generate_excerpt_from_content(content)

    cover = get_cover_image(page.get("cover"))
    if cover:
        thumbnail = optimize_image_url(cover)
    elif first_image_url:
        thumbnail = first_image_url
    else:
        thumbnail = generate_thumbnail(title, tags)

    return BlogPost(
        id=page.get("id", ""),
        title=title,
        slug=get_post_slug(page),
        excerpt=excerpt,
        content=content,
        date=get_post_date(page),
        tags=tags,
        read_time=calculate_read_time(content),
        cover_image=thumbnail,
        published=get_post_published(page),
    )


PUBLISHED_FILTER = {"property": "Published", "checkbox": {"equals": True}}
DATE_DESCENDING = [{"property": "Date", "direction": "descending"}]


async def _query_blog_database(body: dict) -> list[dict]:
    """Query the blog database, following pagination. Only page objects are kept."""
    pages: list[dict] = []
    body = dict(body)

    while True:
        result = await _notion_request_async(
            "POST", f"/databases/{_blog_database_id}/query", json_body=body
        )
        pages.extend(
            item for item in result.get("results", [])
            if item.get("object") == "page" and "properties" in item
        )
        if not result.get("has_more") or not result.get("next_cursor"):
            break
        body["start_cursor"] = result["next_cursor"]

    return pages


async def _load_post(page: dict, cache: Optional["ContentCache"]) -> Optional[BlogPost]:
    try:
        content, first_image = await asyncio.gather(
            get_page_content(page["id"], cache),
            extract_first_image(page["id"], cache),
        )
    except Exception as e:
        logger.error(f"Error processing page {page.get('id')}: {type(e).__name__}: {e}")
        return None
    return notion_page_to_blog_post(page, content, first_image)


# Posts served when the blog database is not configured or unreachable
def _sample_post(post_id: str, title: str, slug: str, date: str, tags: list[str], content: str) -> BlogPost:
    return BlogPost(
        id=post_id,
        title=title,
        slug=slug,
        excerpt=generate_excerpt_from_content(content),
        content=content,
        date=date,
        tags=tags,
        read_time=calculate_read_time(content),
        cover_image=generate_thumbnail(title, tags),
        published=True,
    )


FALLBACK_POSTS = [
    _sample_post(
        "fallback-1",
        "Building a Blog on the Notion API",
        "notion-api-blog-cms",
        "2024-01-10",
        ["Notion", "API", "CMS"],
        "# Building a Blog on the Notion API\n\n"
        "Notion works well as a lightweight CMS. Posts live in a database, "
        "and each page body is a tree of blocks.\n\n"
        "## Database layout\n\n"
        "- **Title** holds the post title\n"
        "- **Slug** is the URL segment\n"
        "- **Published** gates what readers see\n"
        "- **Date** orders the list\n\n"
        "## Fetching pages\n\n"
        "```python\n"
        "pages = await query_database(filter={\"property\": \"Published\", \"checkbox\": {\"equals\": True}})\n"
        "```\n\n"
        "Once the blocks are converted to markdown, rendering is an ordinary markdown pipeline.\n",
    ),
    _sample_post(
        "fallback-2",
        "Markdown Rendering with Custom Directives",
        "markdown-custom-directives",
        "2024-01-05",
        ["Markdown", "Python"],
        "# Markdown Rendering with Custom Directives\n\n"
        "Plain markdown has no toggles, callouts or colored text. A small "
        "directive syntax fills the gap.\n\n"
        ":::toggle{summary=\"What does a toggle look like?\"}\n"
        "It renders as a collapsible details element.\n\n"
        ":::\n\n"
        ":::callout{icon=\"💡\" color=\"gray_background\"}\n"
        "Callouts become aside elements with an icon.\n\n:::\n\n"
        "Equations work too: $e^{i\\pi} + 1 = 0$.\n",
    ),
]


@dataclass
class FallbackContent:
    """Posts served when the blog database is not configured or unreachable."""
    posts: list[BlogPost] = field(default_factory=list)

    def list_posts(self) -> list[BlogPost]:
        return list(self.posts)

    def get_post(self, slug: str) -> Optional[BlogPost]:
        return next((post for post in self.posts if post.slug == slug), None)

    def tags(self) -> list[str]:
        return sorted({tag for post in self.posts for tag in post.tags})


_fallback_content = FallbackContent(FALLBACK_POSTS)


async def _fetch_blog_posts(cache: Optional["ContentCache"]) -> list[BlogPost]:
    """Published posts from the database, read through the cache. Raises on query failure."""
    async def load() -> list[BlogPost]:
        pages = await _query_blog_database({
            "filter": PUBLISHED_FILTER,
            "sorts": DATE_DESCENDING,
        })
        posts = await asyncio.gather(*[_load_post(page, cache) for page in pages])
        return [post for post in posts if post is not None]

    return await _cached(
        cache, "blog-posts", POST_LIST_TTL, (TAG_NOTION_BLOG, TAG_BLOG_POSTS), load
    )


async def get_blog_posts(cache: Optional["ContentCache"] = None) -> list[BlogPost]:
    """All published posts, newest first.

    Serves the fallback posts when the blog is not configured or the database
    query fails; a failed query is not cached.
    """
    if not validate_notion_config():
        logger.warning("Notion blog not configured, using fallback content")
        return _fallback_content.list_posts()

    try:
        return await _fetch_blog_posts(cache)
    except httpx.HTTPError as e:
        logger.error(f"Error fetching blog posts: {e}")
        return _fallback_content.list_posts()


async def get_blog_post(slug: str, cache: Optional["ContentCache"] = None) -> Optional[BlogPost]:
    """The published post with the given slug, or None.

    Looks the slug up in the fallback posts when the blog is not configured
    or the query fails.
    """
    if not validate_notion_config():
        logger.warning("Notion blog not configured, using fallback content")
        return _fallback_content.get_post(slug)

    async def load() -> Optional[BlogPost]:
        pages = await _query_blog_database({
            "filter": {
                "and": [
                    PUBLISHED_FILTER,
                    {"property": "Slug", "rich_text": {"equals": slug}},
                ]
            },
        })
        if not pages:
            return None
        return await _load_post(pages[0], cache)

    try:
        return await _cached(cache, f"blog-post:{slug}", POST_TTL, (TAG_NOTION_BLOG,), load)
    except httpx.HTTPError as e:
        logger.error(f"Error fetching blog post {slug!r}: {e}")
        return _fallback_content.get_post(slug)


async def get_all_tags(cache: Optional["ContentCache"] = None) -> list[str]:
    """Sorted unique tags across all published posts."""
    if not validate_notion_config():
        return _fallback_content.tags()

    async def load() -> list[str]:
        posts = await _fetch_blog_posts(cache)
        return sorted({tag for post in posts for tag in post.tags})

    try:
        return await _cached(cache, "all-tags", TAGS_TTL, (TAG_NOTION_BLOG, TAG_BLOG_TAGS), load)
    except httpx.HTTPError as e:
        logger.error(f"Error fetching tags: {e}")
        return _fallback_content.tags()


def search_blog_posts(posts: list[BlogPost], query: str) -> list[BlogPost]:
    """Case-insensitive match against title, excerpt and tags."""
    needle = query.strip().lower()
    if not needle:
        return list(posts)
    return [
        post for post in posts
        if needle in post.title.lower()
        or needle in post.excerpt.lower()
        or any(needle in tag.lower() for tag in post.tags)
    ]


# =============================================================================
# Content Cache
# =============================================================================

POST_LIST_TTL = 3600
POST_TTL = 7200
CONTENT_TTL = 7200
IMAGE_TTL = 3600
TAGS_TTL = 3600

TAG_NOTION_BLOG = "notion-blog"
TAG_BLOG_POSTS = "blog-posts"
TAG_BLOG_TAGS = "blog-tags"
TAG_NOTION_CONTENT = "notion-content"
TAG_NOTION_IMAGES = "notion-images"

BLOG_CACHE_TAGS = (
    TAG_NOTION_BLOG,
    TAG_BLOG_POSTS,
    TAG_BLOG_TAGS,
    TAG_NOTION_CONTENT,
    TAG_NOTION_IMAGES,
)


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float
    tags: frozenset[str]


class ContentCache:
    """In-memory cache with per-entry TTL and tag-based invalidation.

    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl: float, tags: tuple[str, ...] = ()) -> None:
        self._entries[key] = _CacheEntry(value, self._clock() + ttl, frozenset(tags))

    def expire(self, key: str) -> bool:
        """Drop one entry. Returns whether it existed."""
        return self._entries.pop(key, None) is not None

    def invalidate_tag(self, tag: str) -> int:
        """Drop every entry carrying the tag. Returns how many were dropped."""
        keys = [key for key, entry in self._entries.items() if tag in entry.tags]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info(f"Invalidated {len(keys)} cache entries tagged {tag!r}")
        return len(keys)

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were dropped."""
        now = self._clock()
        keys = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Change Notifications
# =============================================================================

WEBHOOK_SIGNATURE_HEADER = "notion-webhook-signature"


def verify_notion_signature(payload: bytes | str, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a ``v0=<hex hmac-sha256>`` webhook signature in constant time."""
    if not signature or not secret:
        return False

    version, _, digest = signature.partition("=")
    if version != "v0":
        logger.warning(f"Unsupported webhook signature version: {version}")
        return False

    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest.lower().encode("utf-8"), expected.encode("ascii"))


def invalidate_for_event(
    event: dict,
    cache: ContentCache,
    database_id: Optional[str] = None
) -> list[str]:
    """Invalidate blog cache tags for a change event from the blog database.

    Returns:
        The tags invalidated; empty when the event belongs to another database.
    """
    database_id = database_id or _blog_database_id
    parent_id = (event.get("parent") or {}).get("database_id")
    if not _same_notion_id(parent_id, database_id):
        logger.info(f"Event {event.get('id')} not from blog database, skipping cache invalidation")
        return []

    properties = event.get("properties") or {}
    slug = get_plain_text((properties.get("Slug") or {}).get("rich_text"))
    published = (properties.get("Published") or {}).get("checkbox")
    logger.info(
        f"Cache invalidation for event {event.get('id')} "
        f"(slug={slug or '-'}, published={published})"
    )

    for tag in BLOG_CACHE_TAGS:
        cache.invalidate_tag(tag)
    return list(BLOG_CACHE_TAGS)


# =============================================================================
# Markdown Preprocessing
# =============================================================================
# Directive lines must stand alone between blank lines, otherwise the
# markdown parser folds them into the surrounding paragraph. Fenced code is
# passed through untouched.

FENCE_PATTERN = re.compile(r'^\s*(`{3,}|~{3,})')
DIRECTIVE_OPEN_PATTERN = re.compile(
    r'^:::([a-z][a-z-]*)(\{(?:[^"}\n]|"[^"\n]*")*\})?[ \t]*(.*)$'
)
DIRECTIVE_CLOSE = ":::"
MATH_DELIMITER = "$$"
_BLOCK_MATH_LINE = re.compile(r'^\s*\$\$(.+?)\$\$\s*$')
_UNDERLINE_PATTERN = re.compile(r'<u>(.*?)</u>')
_TABLE_ROW = re.compile(r'^\|.*\|$')
_TABLE_SEPARATOR = re.compile(r'^\|(\s*:?-+:?\s*\|)+$')
_UNESCAPED_PIPE = re.compile(r'(?<!\\)\|')


def _closes_fence(line: str, fence: str) -> bool:
    stripped = line.strip()
    return stripped.startswith(fence) and not stripped.lstrip(fence[0])


def _append_blank(lines: list[str]) -> None:
    if lines and lines[-1] != "":
        lines.append("")


def _append_isolated(lines: list[str], *block: str) -> None:
    """Append lines as their own block, with blank lines on both sides."""
    _append_blank(lines)
    lines.extend(block)
    lines.append("")


def _is_table_row(line: str) -> bool:
    return bool(_TABLE_ROW.match(line.strip()))


def _table_cell_count(row: str) -> int:
    return len(_UNESCAPED_PIPE.split(row.strip())) - 2


def preprocess_content(content: str) -> str:
    """Normalize emitted markdown before it reaches the markdown parser.

    - Directive openers and closers are isolated by blank lines; one-line
      forms (``:::breadcrumb :::``, ``:::name{..} body :::``) are split.
    - ``$$expr$$`` equations, on one line or spread over several, become
      fenced math blocks.
    - ``<u>`` becomes an underline span.
    - Header-less pipe tables get an empty header row.
    - Runs of blank lines collapse to one.

    Fenced code blocks are left exactly as written.
    """
    source = content.replace("\r\n", "\n").split("\n")
    lines: list[str] = []
    fence: Optional[str] = None
    math_lines: Optional[list[str]] = None
    depth = 0

    for index, line in enumerate(source):
        if fence:
            lines.append(line)
            if _closes_fence(line, fence):
                fence = None
            continue

        stripped = line.strip()

        if math_lines is not None:
            if stripped.endswith(MATH_DELIMITER):
                math_lines.append(stripped[:-len(MATH_DELIMITER)])
                _append_isolated(lines, MATH_DELIMITER, *[m for m in math_lines if m.strip()], MATH_DELIMITER)
                math_lines = None
            else:
                math_lines.append(line)
            continue

        fence_match = FENCE_PATTERN.match(line)
        if fence_match:
            fence = fence_match.group(1)
            lines.append(line)
            continue

        if not stripped:
            _append_blank(lines)
            continue

        line = _UNDERLINE_PATTERN.sub(r'<span class="notion-underline">\1</span>', line)

        if stripped == DIRECTIVE_CLOSE:
            depth = max(depth - 1, 0)
            _append_isolated(lines, DIRECTIVE_CLOSE)
            continue

        opener = DIRECTIVE_OPEN_PATTERN.match(stripped)
        if opener:
            name, attrs, rest = opener.group(1), opener.group(2) or "", opener.group(3).strip()
            closed = rest.endswith(DIRECTIVE_CLOSE)
            if closed:
                rest = rest[:-len(DIRECTIVE_CLOSE)].rstrip()
            _append_isolated(lines, f":::{name}{attrs}")
            if rest:
                _append_isolated(lines, rest)
            if closed:
                _append_isolated(lines, DIRECTIVE_CLOSE)
            else:
                depth += 1
            continue

        if depth > 0 and stripped.endswith(" " + DIRECTIVE_CLOSE):
            lines.append(line.rstrip()[:-len(DIRECTIVE_CLOSE)].rstrip())
            _append_isolated(lines, DIRECTIVE_CLOSE)
            depth -= 1
            continue

        math_match = _BLOCK_MATH_LINE.match(line)
        if math_match:
            _append_isolated(lines, MATH_DELIMITER, math_match.group(1), MATH_DELIMITER)
            continue

        if stripped.startswith(MATH_DELIMITER):
            rest = stripped[len(MATH_DELIMITER):]
            # "$$$$" is an empty equation
            if not rest.endswith(MATH_DELIMITER):
                math_lines = [rest]
            continue

        if _is_table_row(line) and not (lines and _is_table_row(lines[-1])):
            following = source[index + 1].strip() if index + 1 < len(source) else ""
            if not _TABLE_SEPARATOR.match(following):
                cell_count = max(_table_cell_count(line), 1)
                _append_blank(lines)
                lines.append(_table_line([EMPTY_CELL] * cell_count).rstrip("\n"))
                lines.append(_table_line(["---"] * cell_count).rstrip("\n"))

        lines.append(line)

    # An equation that never closes stays plain text
    if math_lines is not None:
        lines.append(MATH_DELIMITER + math_lines[0])
        lines.extend(math_lines[1:])

    return "\n".join(lines).strip("\n") + "\n"


# =============================================================================
# Directive Parsing (Parsy-based)
# =============================================================================

import parsy as P

# Attribute list inside {...}: key="value" pairs, plus the legacy
# .notion-<color> class form which maps to color.
_attr_space = P.regex(r'\s+')
_attr_key = P.regex(r'[A-Za-z][\w-]*')
_attr_value = P.string('"') >> P.regex(r'[^"]*') << P.string('"')
_attr_pair = P.seq(_attr_key << P.string('='), _attr_value).combine(
    lambda key, value: (key, value.replace("&quot;", '"'))
)
_attr_class = (P.string('.notion-') >> P.regex(r'[a-z_]+')).map(lambda color: ("color", color))
_attr_list = (
    P.regex(r'\s*') >>
    (_attr_pair | _attr_class).sep_by(_attr_space) <<
    P.regex(r'\s*')
)

# name -> attributes that must be present for the directive to render
REQUIRED_DIRECTIVE_ATTRS = {
    "toggle": ("summary",),
    "toggle-heading": ("level",),
    "callout": (),
    "columns": (),
    "column": (),
    "template": ("title",),
    "embed": ("url",),
    "video": ("url",),
    "audio": ("url",),
    "file": ("url",),
    "table-of-contents": (),
    "breadcrumb": (),
}


@dataclass
class MarkdownSegment:
    """Plain markdown between directives."""
    text: str


@dataclass
class DirectiveNode:
    """A ``:::name{attrs} ... :::`` block and its parsed body."""
    name: str
    attrs: dict[str, str]
    children: list = field(default_factory=list)
    raw: str = ""
    valid: bool = True


def parse_directive_attrs(raw: str) -> Optional[dict[str, str]]:
    """Parse the inside of a directive's ``{...}``.

    Returns:
        Attribute dict ({} for empty input), or None if malformed.
    """
    if not raw.strip():
        return {}
    try:
        return dict(_attr_list.parse(raw))
    except P.ParseError:
        return None


def _directive_is_valid(name: str, attrs: Optional[dict[str, str]]) -> bool:
    if attrs is None or name not in REQUIRED_DIRECTIVE_ATTRS:
        return False
    if any(key not in attrs for key in REQUIRED_DIRECTIVE_ATTRS[name]):
        return False
    if name == "toggle-heading" and attrs["level"] not in ("1", "2", "3", "4", "5", "6"):
        return False
    return True


def parse_directives(content: str) -> list:
    """Split preprocessed markdown into MarkdownSegment / DirectiveNode trees.

    Directives nest; an unclosed directive is closed at end of input and a
    closer with nothing open stays as text. Unknown names, malformed
    attributes and missing required attributes mark the node invalid.
    """
    root: list = []
    stack: list[DirectiveNode] = []
    buffer: list[str] = []
    fence: Optional[str] = None

    def current() -> list:
        return stack[-1].children if stack else root

    def flush() -> None:
        if any(line.strip() for line in buffer):
            current().append(MarkdownSegment("\n".join(buffer).strip("\n") + "\n"))
        buffer.clear()

    for line in content.split("\n"):
        if fence:
            buffer.append(line)
            if _closes_fence(line, fence):
                fence = None
            continue

        fence_match = FENCE_PATTERN.match(line)
        if fence_match:
            fence = fence_match.group(1)
            buffer.append(line)
            continue

        stripped = line.strip()
        if stripped == DIRECTIVE_CLOSE and stack:
            flush()
            stack.pop()
            continue

        opener = DIRECTIVE_OPEN_PATTERN.match(stripped)
        if opener and not opener.group(3):
            flush()
            name, raw_attrs = opener.group(1), opener.group(2)
            attrs = parse_directive_attrs(raw_attrs[1:-1] if raw_attrs else "")
            node = DirectiveNode(
                name=name,
                attrs=attrs or {},
                raw=stripped,
                valid=_directive_is_valid(name, attrs),
            )
            if not node.valid:
                logger.debug(f"Invalid directive rendered as text: {stripped}")
            current().append(node)
            stack.append(node)
            continue

        buffer.append(line)

    flush()
    return root


# =============================================================================
# HTML Rendering
# =============================================================================

MARKDOWN_PLUGINS = ["strikethrough", "table", "task_lists", "url", "math"]

_COLOR_SUFFIX = re.compile(r'\s*\{\.notion-([a-z_]+)\}\s*$')
_TAG_PATTERN = re.compile(r'<[^>]+>')
_NESTED_LIST = re.compile(r'<(?:ul|ol)[\s>]')
_HEADING_LINE = re.compile(r'^(#{1,6})\s+(.*)$')
_SLUG_STRIP = re.compile(r'[^a-z0-9가-힣]+')
_QUOTE_CALLOUT = re.compile(r'^\s*<p>([^\w\s<])(\ufe0f?)\s+(.*)$', re.DOTALL)

# Leading emoji of a blockquote -> callout category
CALLOUT_EMOJI_CATEGORIES = {
    "💡": "idea", "⚡": "idea", "✨": "idea",
    "⚠": "warning", "🚨": "warning", "❗": "warning",
    "ℹ": "info", "📝": "info", "📋": "info",
    "✅": "success", "✔": "success", "🎉": "success",
    "🔥": "highlight", "🚀": "highlight", "⭐": "highlight",
}
CALLOUT_CATEGORY_COLORS = {
    "idea": "yellow",
    "warning": "red",
    "info": "blue",
    "success": "green",
    "highlight": "orange",
    "default": "gray",
}
CALLOUT_COLORS = {
    "yellow", "red", "blue", "green", "orange", "purple", "pink", "gray", "brown", "default",
}


def slugify_heading(text: str) -> str:
    """Anchor id for a heading: lowercase, non-alphanumerics to single hyphens."""
    return _SLUG_STRIP.sub("-", text.lower()).strip("-")


def _split_color_suffix(text: str) -> tuple[str, Optional[str]]:
    match = _COLOR_SUFFIX.search(text)
    if not match:
        return text, None
    return text[:match.start()], match.group(1)


def _class_attr(*classes: Optional[str]) -> str:
    names = " ".join(c for c in classes if c)
    return f' class="{names}"' if names else ""


def _attr(value: str) -> str:
    return html.escape(value, quote=True)


class BlogHTMLRenderer(mistune.HTMLRenderer):
    """mistune renderer with heading anchors, color classes and emoji callouts.

    Heading ids are unique per instance; use one renderer per document.
    """

    def __init__(self):
        super().__init__(escape=False)
        self._heading_ids: dict[str, int] = {}

    def heading_id(self, text_html: str) -> Optional[str]:
        slug = slugify_heading(html.unescape(_TAG_PATTERN.sub("", text_html)))
        if not slug:
            return None
        seen = self._heading_ids.get(slug, 0)
        self._heading_ids[slug] = seen + 1
        return slug if seen == 0 else f"{slug}-{seen}"

    def heading_html(self, text: str, level: int, color: Optional[str] = None) -> str:
        tag = f"h{level}"
        heading_id = self.heading_id(text)
        id_attr = f' id="{heading_id}"' if heading_id else ""
        class_attr = _class_attr(f"notion-{color}" if color else None)
        return f"<{tag}{id_attr}{class_attr}>{text}</{tag}>\n"

    def heading(self, text: str, level: int, **attrs: Any) -> str:
        text, color = _split_color_suffix(text)
        return self.heading_html(text, level, color)

    def paragraph(self, text: str) -> str:
        text, color = _split_color_suffix(text)
        return f"<p{_class_attr(f'notion-{color}' if color else None)}>{text}</p>\n"

    def list_item(self, text: str) -> str:
        nested = _NESTED_LIST.search(text)
        head, tail = (text[:nested.start()], text[nested.start():]) if nested else (text, "")
        head, color = _split_color_suffix(head)
        if color:
            return f'<li class="notion-{color}">{head}{tail}</li>\n'
        return f"<li>{head}{tail}</li>\n"

    def block_quote(self, text: str) -> str:
        match = _QUOTE_CALLOUT.match(text)
        if match and _is_callout_icon(match.group(1)):
            icon = match.group(1) + match.group(2)
            category = CALLOUT_EMOJI_CATEGORIES.get(match.group(1), "default")
            color = CALLOUT_CATEGORY_COLORS[category]
            return (
                f'<div class="notion-callout notion-callout-{color}" data-callout="{category}" role="note">'
                f'<span class="notion-callout-icon">{icon}</span>'
                f'<div class="notion-callout-content"><p>{match.group(3)}</div></div>\n'
            )
        return super().block_quote(text)


def _is_callout_icon(char: str) -> bool:
    return char in CALLOUT_EMOJI_CATEGORIES or unicodedata.category(char) == "So"


class DisclosureState(Enum):
    COLLAPSED = auto()
    EXPANDED = auto()


@dataclass
class Disclosure:
    """A collapsible section. Starts collapsed; toggle() flips the state."""
    summary: str
    body: str
    css_class: str = "notion-toggle"
    state: DisclosureState = DisclosureState.COLLAPSED

    @property
    def is_expanded(self) -> bool:
        return self.state is DisclosureState.EXPANDED

    def toggle(self) -> DisclosureState:
        if self.is_expanded:
            self.state = DisclosureState.COLLAPSED
        else:
            self.state = DisclosureState.EXPANDED
        return self.state

    def to_html(self) -> str:
        open_attr = " open" if self.is_expanded else ""
        return (
            f'<details class="{self.css_class}"{open_attr}>'
            f"<summary>{self.summary}</summary>"
            f'<div class="notion-toggle-content">\n{self.body}</div></details>\n'
        )


class DocumentRenderer:
    """Renders one document's segment tree. Not reusable across documents."""

    def __init__(self):
        self.renderer = BlogHTMLRenderer()
        self.markdown = mistune.create_markdown(renderer=self.renderer, plugins=MARKDOWN_PLUGINS)

    def render(self, nodes: list) -> str:
        return "".join(self.render_node(node) for node in nodes)

    def render_node(self, node) -> str:
        if isinstance(node, MarkdownSegment):
            return self.markdown(node.text)
        if not node.valid:
            return f"<p>{html.escape(node.raw)}</p>\n{self.render(node.children)}<p>{DIRECTIVE_CLOSE}</p>\n"
        return DIRECTIVE_RENDERERS[node.name](self, node)

    def render_inline(self, text: str) -> str:
        """Render a single line of inline markdown without the <p> wrapper."""
        rendered = self.markdown(text).strip()
        if rendered.startswith("<p>") and rendered.endswith("</p>") and rendered.count("<p>") == 1:
            return rendered[3:-4]
        return rendered


def _render_toggle(doc: DocumentRenderer, node: DirectiveNode) -> str:
    color = node.attrs.get("color")
    disclosure = Disclosure(
        summary=doc.render_inline(node.attrs["summary"]),
        body=doc.render(node.children),
        css_class=f"notion-toggle notion-{color}" if color else "notion-toggle",
    )
    return disclosure.to_html()


def _render_toggle_heading(doc: DocumentRenderer, node: DirectiveNode) -> str:
    level = int(node.attrs["level"])
    content = node.attrs.get("content", "")
    children = list(node.children)

    # The heading line itself is the first line of the body
    if children and isinstance(children[0], MarkdownSegment):
        first, _, rest = children[0].text.partition("\n")
        heading = _HEADING_LINE.match(first.strip())
        if heading:
            content = content or heading.group(2)
            children[0] = MarkdownSegment(rest)

    text, color = _split_color_suffix(content)
    disclosure = Disclosure(
        summary=doc.renderer.heading_html(doc.render_inline(text), level, color),
        body=doc.render(children),
        css_class="notion-toggle notion-toggle-heading",
    )
    return disclosure.to_html()


def _render_callout(doc: DocumentRenderer, node: DirectiveNode) -> str:
    icon = node.attrs.get("icon") or DEFAULT_CALLOUT_ICON
    color = (node.attrs.get("color") or "default").removesuffix("_background")
    if color not in CALLOUT_COLORS:
        color = "default"

    if icon.startswith(("http://", "https://", "/")):
        icon_html = f'<img src="{_attr(icon)}" alt="" class="notion-callout-icon-image">'
    else:
        icon_html = html.escape(icon)

    return (
        f'<div class="notion-callout notion-callout-{color}" role="note">'
        f'<span class="notion-callout-icon">{icon_html}</span>'
        f'<div class="notion-callout-content">\n{doc.render(node.children)}</div></div>\n'
    )


def _render_columns(doc: DocumentRenderer, node: DirectiveNode) -> str:
    return f'<div class="notion-columns">\n{doc.render(node.children)}</div>\n'


def _render_column(doc: DocumentRenderer, node: DirectiveNode) -> str:
    return f'<div class="notion-column">\n{doc.render(node.children)}</div>\n'


def _render_template(doc: DocumentRenderer, node: DirectiveNode) -> str:
    title = html.escape(node.attrs["title"])
    return (
        f'<div class="notion-template">'
        f'<div class="notion-template-title">📋 Template: {title}</div>\n'
        f"{doc.render(node.children)}</div>\n"
    )


def _render_embed(doc: DocumentRenderer, node: DirectiveNode) -> str:
    url = _attr(node.attrs["url"])
    caption = node.attrs.get("caption")
    figcaption = f"<figcaption>{html.escape(caption)}</figcaption>" if caption else ""
    return (
        f'<figure class="notion-embed">'
        f'<iframe src="{url}" title="{_attr(caption or "Embedded content")}" allowfullscreen></iframe>'
        f"{figcaption}</figure>\n"
    )


def _render_video(doc: DocumentRenderer, node: DirectiveNode) -> str:
    url = _attr(node.attrs["url"])
    title = node.attrs.get("title") or "Video"
    figcaption = f"<figcaption>{html.escape(title)}</figcaption>" if title != "Video" else ""
    return (
        f'<figure class="notion-video">'
        f'<video controls preload="metadata"><source src="{url}">'
        f'<a href="{url}">Download video: {html.escape(title)}</a></video>'
        f"{figcaption}</figure>\n"
    )


def _render_audio(doc: DocumentRenderer, node: DirectiveNode) -> str:
    url = _attr(node.attrs["url"])
    title = html.escape(node.attrs.get("title") or "Audio")
    return (
        f'<div class="notion-audio">'
        f'<div class="notion-audio-title">🎵 {title}</div>'
        f'<audio controls preload="metadata"><source src="{url}">'
        f'<a href="{url}">Download audio: {title}</a></audio></div>\n'
    )


_FILE_ICONS = [
    (re.compile(r'\.(mp4|avi|mov|wmv|flv|webm|mkv)$', re.IGNORECASE), "🎥"),
    (re.compile(r'\.(mp3|wav|flac|aac|ogg|m4a)$', re.IGNORECASE), "🎵"),
    (re.compile(r'\.(doc|docx)$', re.IGNORECASE), "📝"),
    (re.compile(r'\.(xls|xlsx)$', re.IGNORECASE), "📊"),
    (re.compile(r'\.(ppt|pptx)$', re.IGNORECASE), "📽️"),
    (re.compile(r'\.(zip|rar|7z|tar|gz)$', re.IGNORECASE), "🗜️"),
]


def _file_icon(title: str, url: str) -> str:
    lowered = title.lower()
    path = urlparse(url).path
    if "pdf" in lowered or ".pdf" in url.lower():
        return "📄"
    if "video" in lowered:
        return "🎥"
    if "audio" in lowered:
        return "🎵"
    for pattern, icon in _FILE_ICONS:
        if pattern.search(path):
            return icon
    return "📎"


def _render_file(doc: DocumentRenderer, node: DirectiveNode) -> str:
    url = node.attrs["url"]
    title = node.attrs.get("title") or "File"
    return (
        f'<div class="notion-file">'
        f'<a href="{_attr(url)}" target="_blank" rel="noopener noreferrer">'
        f'<span class="notion-file-icon">{_file_icon(title, url)}</span>'
        f'<span class="notion-file-title">{html.escape(title)}</span></a></div>\n'
    )


def _render_table_of_contents(doc: DocumentRenderer, node: DirectiveNode) -> str:
    color = node.attrs.get("color")
    classes = _class_attr("notion-toc", f"notion-{color}" if color else None)
    return f'<nav{classes} data-notion-toc="true"></nav>\n'


def _render_breadcrumb(doc: DocumentRenderer, node: DirectiveNode) -> str:
    return (
        '<nav class="notion-breadcrumb" aria-label="breadcrumb">'
        '<a href="/">Home</a> / <a href="/blog">Blog</a></nav>\n'
    )


DIRECTIVE_RENDERERS: dict[str, Callable[[DocumentRenderer, DirectiveNode], str]] = {
    "toggle": _render_toggle,
    "toggle-heading": _render_toggle_heading,
    "callout": _render_callout,
    "columns": _render_columns,
    "column": _render_column,
    "template": _render_template,
    "embed": _render_embed,
    "video": _render_video,
    "audio": _render_audio,
    "file": _render_file,
    "table-of-contents": _render_table_of_contents,
    "breadcrumb": _render_breadcrumb,
}


def build_table_of_contents(rendered: str) -> str:
    """Fill table-of-contents placeholders from the document's headings.

    Headings without an id get ``heading-<index>``. Documents without a
    placeholder are returned unchanged.
    """
    if "data-notion-toc" not in rendered:
        return rendered

    soup = BeautifulSoup(rendered, "html.parser")
    placeholders = soup.find_all("nav", attrs={"data-notion-toc": True})
    if not placeholders:
        return rendered

    headings = soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])
    for index, heading in enumerate(headings):
        if not heading.get("id"):
            heading["id"] = f"heading-{index}"

    for nav in placeholders:
        nav.clear()
        items = soup.new_tag("ul")
        for heading in headings:
            level = int(heading.name[1])
            item = soup.new_tag("li", attrs={
                "class": "notion-toc-item",
                "style": f"padding-left: {(level - 1) * 16}px",
            })
            link = soup.new_tag("a", href=f"#{heading['id']}")
            link.string = heading.get_text(" ", strip=True)
            item.append(link)
            items.append(item)
        nav.append(items)

    return str(soup)


def render_markdown(content: str) -> str:
    """Render emitted markdown (with directives) to HTML."""
    if not content or not content.strip():
        return ""
    segments = parse_directives(preprocess_content(content))
    return build_table_of_contents(DocumentRenderer().render(segments))


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., NOT_FOUND, BAD_FORMAT)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "invalid_token": "Token is invalid or expired. Check the file passed as --token-file.",
    "not_configured": "Start the server with --token-file and --database-id <blog database UUID or URL>.",
    "not_found": "Use blog_list_posts to see the slugs of published posts.",
    "missing_capability": "Share the blog database with the integration: open it in Notion → Share → invite the integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
}


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notion-blog", host="127.0.0.1", port=2052)

_content_cache = ContentCache()


def _fallback_note() -> str:
    """Leading note line for tool output served from the fallback posts."""
    if validate_notion_config():
        return ""
    return f"note: blog database is not configured, showing sample posts. {HINTS['not_configured']}\n"


def _format_post_line(post: BlogPost) -> str:
    tags = ", ".join(post.tags) or "-"
    return f"{post.slug} | {post.date or '-'} | {post.title} | {tags} | {post.read_time} min"


@mcp.tool()
async def blog_list_posts(search: str = "") -> str:
    """List published blog posts, newest first.

    Args:
        search: Optional case-insensitive filter on title, excerpt and tags.

    Returns:
        One line per post: slug | date | title | tags | read time. Sample
        posts are listed, after a note line, when the blog is not configured.
    """
    note = _fallback_note()
    posts = await get_blog_posts(_content_cache)
    total = len(posts)
    if search.strip():
        posts = search_blog_posts(posts, search)

    if not posts:
        return note + f"no posts (0 of {total})"

    lines = [f"{len(posts)} of {total} posts"]
    lines.extend(_format_post_line(post) for post in posts)
    return note + "\n".join(lines)


@mcp.tool()
async def blog_read_post(slug: str, format: str = "markdown") -> str:
    """Read one published post by slug.

    Args:
        slug: The post's Slug property.
        format: "markdown" (the emitted annotated markdown, default) or
            "html" (rendered).

    Returns:
        @-prefixed header lines (post id, title, date, tags, read time),
        a blank line, then the content.
    """
    if format not in ("markdown", "html"):
        return _error("BAD_FORMAT", f"Unknown format '{format}'", hint="Use 'markdown' or 'html'.")

    note = _fallback_note()
    post = await get_blog_post(slug, _content_cache)
    if post is None:
        return note + _error("NOT_FOUND", "No published post with this slug", hint=HINTS["not_found"], ref=slug)

    body = post.content if format == "markdown" else render_markdown(post.content)
    header = [
        f"@post {post.id}",
        f"@title {post.title}",
        f"@date {post.date}",
        f"@tags {', '.join(post.tags)}",
        f"@read_time {post.read_time} min",
    ]
    return note + "\n".join(header) + "\n\n" + body


@mcp.tool()
async def blog_check_auth() -> str:
    """Verify Notion authentication and access to the blog database.

    Returns a message naming the integration, its workspace and the blog
    database title, or an error with a hint.
    """
    try:
        _get_token()
    except RuntimeError as e:
        return _error("NO_TOKEN", str(e), hint=HINTS["invalid_token"])

    try:
        result = await _notion_request_async("GET", "/users/me")

        bot_name = result.get("name", "Unknown")
        bot_type = result.get("type", "unknown")
        workspace_name = (result.get("bot") or {}).get("workspace_name", "Unknown workspace")
        message = f"authenticated as '{bot_name}' ({bot_type}) in workspace '{workspace_name}'"

        if not _blog_database_id:
            return message + "\nblog database: not configured"

        database = await _notion_request_async("GET", f"/databases/{_blog_database_id}")
        title = get_plain_text(database.get("title")) or "Untitled"
        return message + f"\nblog database: '{title}'"

    except httpx.HTTPStatusError as e:
        status = e.response.status_code if e.response is not None else None
        if status == 401:
            return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
        elif status in (403, 404):
            return _error(
                "NO_ACCESS", "Blog database is not accessible",
                hint=HINTS["missing_capability"], ref=_blog_database_id
            )
        elif status == 429 or status is None:
            return _error("RATE_LIMITED", "Notion API rate limit exceeded", hint=HINTS["rate_limited"])
        else:
            return _error("HTTP_ERROR", f"HTTP {status}")
    except Exception as e:
        return _error("UNEXPECTED", f"{type(e).__name__}: {e}")


# =============================================================================
# HTTP Endpoints
# =============================================================================

IMAGE_PROXY_USER_AGENT = "Mozilla/5.0 (compatible; Blog Image Proxy)"
IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    token_loaded = _notion_token is not None

    auth_status = None
    if token_loaded:
        try:
            result = await _notion_request_async("GET", "/users/me")
            auth_status = (result.get("bot") or {}).get("workspace_name", "connected")
        except Exception as e:
            auth_status = f"error: {type(e).__name__}"

    return JSONResponse({
        "status": "ok",
        "token_loaded": token_loaded,
        "database_configured": _blog_database_id is not None,
        "workspace": auth_status,
        "cache_entries": len(_content_cache),
    })


async def blog_endpoint(request: Request) -> JSONResponse:
    """Published posts (without content) and all tags; ?search= filters."""
    search_query = request.query_params.get("search")

    posts = await get_blog_posts(_content_cache)
    all_tags = await get_all_tags(_content_cache)

    filtered = posts
    if search_query and search_query.strip():
        filtered = search_blog_posts(posts, search_query)

    return JSONResponse({
        "posts": [post.to_dict(include_content=False) for post in filtered],
        "all_tags": all_tags,
        "search_query": search_query or None,
        "total_count": len(posts),
        "filtered_count": len(filtered),
    })


async def image_proxy_endpoint(request: Request) -> Response:
    """Stream an allow-listed remote image with long-lived cache headers."""
    image_url = request.query_params.get("url")
    if not image_url:
        return Response("Missing URL parameter", status_code=400)

    try:
        host = urlparse(image_url).hostname or ""
    except ValueError:
        return Response("Invalid URL", status_code=400)
    if not _host_matches(host, IMAGE_PROXY_ALLOWED_HOSTS):
        return Response("Unauthorized URL", status_code=403)

    client = await _get_async_client()
    try:
        upstream = await client.get(
            image_url,
            headers={"User-Agent": IMAGE_PROXY_USER_AGENT},
            follow_redirects=True,
        )
    except httpx.HTTPError as e:
        logger.error(f"Error proxying image from {host}: {type(e).__name__}: {e}")
        return Response("Internal Server Error", status_code=500)

    if not upstream.is_success:
        return Response("Failed to fetch image", status_code=upstream.status_code)

    return Response(
        upstream.content,
        media_type=upstream.headers.get("content-type", "image/jpeg"),
        headers={
            "Cache-Control": IMAGE_CACHE_CONTROL,
            "Access-Control-Allow-Origin": "*",
        },
    )


def _secret_matches(given: Optional[str], expected: Optional[str]) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


async def revalidate_endpoint(request: Request) -> Response:
    """Secret-guarded cache invalidation.

    GET describes usage; POST invalidates ?tag= or every blog tag.
    """
    if not _secret_matches(request.query_params.get("secret"), _revalidate_secret):
        return Response("Invalid secret", status_code=401)

    if request.method == "GET":
        return JSONResponse({
            "message": "Use POST method to revalidate cache",
            "usage": "POST /api/revalidate?secret=YOUR_SECRET&tag=OPTIONAL_TAG",
        })

    tag = request.query_params.get("tag")
    tags = [tag] if tag else list(BLOG_CACHE_TAGS)
    dropped = sum(_content_cache.invalidate_tag(t) for t in tags)
    logger.info(f"Revalidated tags {tags} ({dropped} entries)")

    body = {"revalidated": True, "now": int(time.time() * 1000), "invalidated_entries": dropped}
    if tag:
        body["tag"] = tag
    else:
        body["tags"] = tags
    return JSONResponse(body)


async def webhook_endpoint(request: Request) -> JSONResponse:
    """Notion change notifications; invalidates blog caches.

    GET reports whether the endpoint is configured. POST requires a valid
    notion-webhook-signature header.
    """
    if request.method == "GET":
        return JSONResponse({
            "message": "Notion webhook endpoint is active",
            "timestamp": _now_iso(),
            "environment": {
                "has_webhook_secret": _webhook_secret is not None,
                "has_blog_database_id": _blog_database_id is not None,
            },
        })

    body = await request.body()

    if not _webhook_secret:
        logger.error("Webhook secret not configured")
        return JSONResponse({"error": "Webhook secret not configured"}, status_code=500)

    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        return JSONResponse({"error": "Missing webhook signature"}, status_code=401)
    if not verify_notion_signature(body, signature, _webhook_secret):
        logger.warning("Invalid webhook signature")
        return JSONResponse({"error": "Invalid webhook signature"}, status_code=401)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Invalid JSON payload: {e}")
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

    events = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(events, list):
        events = []
    invalidated = 0
    for event in events:
        if isinstance(event, dict) and invalidate_for_event(event, _content_cache):
            invalidated += 1

    logger.info(f"Webhook processed: {len(events)} events, {invalidated} invalidated caches")
    return JSONResponse({
        "message": "Webhook processed successfully",
        "request_id": payload.get("request_id") if isinstance(payload, dict) else None,
        "events_processed": len(events),
        "invalidated": invalidated,
        "timestamp": _now_iso(),
    })


HTTP_ROUTES = [
    ("/health", health_endpoint, ["GET"]),
    ("/api/blog", blog_endpoint, ["GET"]),
    ("/api/image-proxy", image_proxy_endpoint, ["GET"]),
    ("/api/revalidate", revalidate_endpoint, ["GET", "POST"]),
    ("/api/webhook/notion", webhook_endpoint, ["GET", "POST"]),
]


def create_http_app() -> Starlette:
    """Starlette app with the blog routes only (no MCP transport)."""
    return Starlette(routes=[
        Route(path, endpoint, methods=methods) for path, endpoint, methods in HTTP_ROUTES
    ])


# =============================================================================
# Main Entry Point
# =============================================================================

def _read_secret_file(path: str, label: str) -> str:
    secret_path = Path(path).expanduser()
    if not secret_path.exists():
        logger.error(f"{label} file not found: {secret_path}")
        raise SystemExit(1)
    value = secret_path.read_text().strip()
    if not value:
        logger.error(f"{label} file is empty")
        raise SystemExit(1)
    logger.info(f"{label} loaded from {secret_path}")
    return value


def main():
    """Run the Notion blog server.

    Supports two transport modes:
    - stdio (default): MCP tools only
    - http: MCP plus the blog routes on localhost:2052

    Usage:
        notion-blog --token-file ~/.secrets/notion --database-id <id>
        notion-blog --token-file ~/.secrets/notion --database-id <id> --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Blog Server")
    parser.add_argument(
        "--token-file",
        required=True,
        help="Path to file containing Notion API token"
    )
    parser.add_argument(
        "--database-id",
        help="Blog database UUID or Notion URL"
    )
    parser.add_argument(
        "--webhook-secret-file",
        help="Path to file containing the Notion webhook signing secret"
    )
    parser.add_argument(
        "--revalidate-secret-file",
        help="Path to file containing the /api/revalidate secret"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token, _blog_database_id, _webhook_secret, _revalidate_secret
    _notion_token = _read_secret_file(args.token_file, "Notion token")

    if args.database_id:
        _blog_database_id = parse_notion_id(args.database_id)
        if _blog_database_id is None:
            logger.error(f"Not a Notion database id or URL: {args.database_id}")
            raise SystemExit(1)
    else:
        logger.warning("No --database-id given; blog tools will serve the fallback posts")

    if args.webhook_secret_file:
        _webhook_secret = _read_secret_file(args.webhook_secret_file, "Webhook secret")
    if args.revalidate_secret_file:
        _revalidate_secret = _read_secret_file(args.revalidate_secret_file, "Revalidate secret")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        for path, endpoint, methods in HTTP_ROUTES:
            app.add_route(path, endpoint, methods=methods)

        logger.info("Starting Notion blog server on http://127.0.0.1:2052")
        uvicorn.run(app, host="127.0.0.1", port=2052, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
