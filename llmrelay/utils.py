import asyncio
import base64
import html
import logging
import mimetypes
import re
from typing import Any, Awaitable, Iterable, List, Literal, Optional, Tuple, TypedDict, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Composite tool names are "<server key>--<tool name>"
TOOL_NAME_DELIMITER = "--"

DEFAULT_FETCH_CONCURRENCY = 4

_IMG_TAG_RE = re.compile(r"<img\b[^>]*?\bsrc\s*=\s*([\"'])(.*?)\1[^>]*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<br\s*/?>|</p>|</div>", re.IGNORECASE)

# Keywords that vendor tool-schema validators reject
_UNSUPPORTED_SCHEMA_KEYS = ("additionalProperties", "$schema")


# =============================================================================
# Image Helpers
# =============================================================================

async def encode_image_url(url: str, client: Optional[httpx.AsyncClient] = None) -> Tuple[str, str]:
    """
    Fetch an image from a URL and encode it to base64.

    This function downloads the image content using an async HTTP client,
    extracts the MIME type from the response headers, and encodes the content.

    Args:
        url (str): The publicly accessible URL of the image.
        client (httpx.AsyncClient, optional): Client to reuse. A short-lived
            client is created when omitted.

    Returns:
        Tuple[str, str]: A tuple containing:
            - b64_data (str): The base64-encoded string of the downloaded content.
            - mime_type (str): The MIME type from the Content-Type header.

    Raises:
        httpx.HTTPError: If the download fails (timeout, 404, etc.).
    """
    # Use a browser-like User-Agent to avoid being blocked
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }

    if client is None:
        async with httpx.AsyncClient(timeout=30.0, headers=headers, follow_redirects=True) as http_client:
            response = await http_client.get(url)
    else:
        response = await client.get(url, headers=headers, follow_redirects=True)
    response.raise_for_status()

    # Extract MIME type from Content-Type header
    content_type = response.headers.get("content-type", "image/jpeg")
    mime_type = content_type.split(";")[0].strip()

    b64_data = base64.b64encode(response.content).decode("utf-8")
    return b64_data, mime_type


def parse_data_uri(uri: str) -> Tuple[str, str]:
    """
    Split a ``data:`` URI into (base64_data, mime_type).
    """
    header, _, data = uri.partition(",")
    mime_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
    return data, mime_type


async def resolve_image_to_base64(url: str, client: Optional[httpx.AsyncClient] = None) -> Tuple[str, str]:
    """
    Resolve an arbitrary image reference (URL or data URI) to base64 data.

    Args:
        url (str): HTTP/HTTPS URL or Data URI (data:image/...).

    Returns:
        Tuple[str, str]: A tuple containing (base64_data, mime_type).
    """
    if url.startswith("data:"):
        return parse_data_uri(url)
    return await encode_image_url(url, client)


class PromptSegment(TypedDict, total=False):
    """
    A piece of an HTML prompt: plain text or an embedded image.
    """
    type: Literal["text", "image"]
    data: str
    data_type: Literal["URL", "base64"]
    mime_type: str


def guess_image_mime_type(url: str) -> str:
    mime_type, _ = mimetypes.guess_type(url.split("?")[0])
    if mime_type and mime_type.startswith("image/"):
        return mime_type
    return "image/jpeg"


def split_by_img(content: str) -> List[PromptSegment]:
    """
    Split an HTML prompt into text and ``<img>`` segments, preserving order.

    Text segments have their HTML stripped; blank text segments are dropped.
    """
    segments: List[PromptSegment] = []
    position = 0
    for match in _IMG_TAG_RE.finditer(content):
        text = strip_html_tags(content[position:match.start()])
        if text.strip():
            segments.append({"type": "text", "data": text})
        src = match.group(2).strip()
        if src.startswith("data:"):
            _, mime_type = parse_data_uri(src)
            segments.append({"type": "image", "data": src, "data_type": "base64", "mime_type": mime_type})
        else:
            segments.append({
                "type": "image",
                "data": src,
                "data_type": "URL",
                "mime_type": guess_image_mime_type(src),
            })
        position = match.end()
    tail = strip_html_tags(content[position:])
    if tail.strip() or not segments:
        segments.append({"type": "text", "data": tail})
    return segments


def strip_html_tags(content: str) -> str:
    """
    Remove HTML markup, keeping line breaks for block elements.
    """
    text = _BREAK_RE.sub("\n", content)
    text = _TAG_RE.sub("", text)
    return html.unescape(text).strip()


# =============================================================================
# Request Helpers
# =============================================================================

def url_join(path: str, base: str) -> str:
    """
    Join an API base URL and an operation path with exactly one slash.
    """
    return f"{base.strip().rstrip('/')}/{path.lstrip('/')}"


def remove_additional_properties(schema: Any) -> Any:
    """
    Recursively drop JSON-schema keywords that vendor tool validators reject.
    """
    if isinstance(schema, dict):
        return {
            key: remove_additional_properties(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [remove_additional_properties(item) for item in schema]
    return schema


def split_tool_name(name: str) -> Tuple[str, str]:
    """
    Split ``server--tool`` into (server_key, tool_name).

    Names without the delimiter have an empty server key.
    """
    server_key, sep, tool_name = name.partition(TOOL_NAME_DELIMITER)
    if not sep:
        return "", name
    return server_key, tool_name


async def gather_bounded(aws: Iterable[Awaitable[T]], limit: int = DEFAULT_FETCH_CONCURRENCY) -> List[T]:
    """
    Await all awaitables with at most ``limit`` running at once.

    Results keep the input order. The first exception propagates.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(aw: Awaitable[T]) -> T:
        async with semaphore:
            return await aw

    return list(await asyncio.gather(*(_run(aw) for aw in aws)))
