"""Built-in tool definitions."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import cast
from urllib import parse as urllib_parse
from urllib.request import Request, urlopen

import html2markdown
from pydantic import BaseModel, Field
from republic import Tool, tool_from_model

from vibex.tools.registry import ToolDescriptor, ToolRegistry

REQUEST_TIMEOUT_SECONDS = 20
MAX_FETCH_BYTES = 1_000_000
USER_AGENT = "vibex-web-tools/1.0"


class ReadInput(BaseModel):
    """Read a file with optional offset and limit."""

    path: str = Field(..., description="Path to the file")
    offset: int = Field(default=0, ge=0, description="Line offset (0-based)")
    limit: int | None = Field(default=None, ge=1, description="Maximum number of lines to read")


class WriteInput(BaseModel):
    """Write content to a file."""

    path: str = Field(..., description="Path to the file")
    content: str = Field(..., description="File contents")


class EditInput(BaseModel):
    """Replace text in a file."""

    path: str = Field(..., description="Path to the file")
    old: str = Field(..., description="Text to replace")
    new: str = Field(..., description="Replacement text")
    all: bool = Field(default=False, description="Replace all occurrences")


class WebFetchInput(BaseModel):
    """Fetch a web page and convert the HTML body to markdown."""

    url: str = Field(..., description="URL to fetch")


def resolve_path(workspace: Path, raw_path: str) -> Path:
    path = Path(raw_path).expanduser()
    if path.is_absolute():
        return path
    return workspace / path


def create_read_tool(workspace: Path) -> Tool:
    def _handler(params: ReadInput) -> str:
        lines = resolve_path(workspace, params.path).read_text(encoding="utf-8").splitlines()
        limit = len(lines) if params.limit is None else params.limit
        selected = lines[params.offset : params.offset + limit]
        return "\n".join(f"{idx:4}| {line}" for idx, line in enumerate(selected, start=params.offset + 1))

    return tool_from_model(ReadInput, _handler, name="fs.read", description="Read a file with optional offset and limit")


def create_write_tool(workspace: Path) -> Tool:
    def _handler(params: WriteInput) -> str:
        file_path = resolve_path(workspace, params.path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(params.content, encoding="utf-8")
        return f"wrote: {file_path}"

    return tool_from_model(WriteInput, _handler, name="fs.write", description="Write content to a file")


def create_edit_tool(workspace: Path) -> Tool:
    def _handler(params: EditInput) -> str:
        file_path = resolve_path(workspace, params.path)
        content = file_path.read_text(encoding="utf-8")
        count = content.count(params.old)
        if count == 0:
            raise ValueError("old text not found")
        if count > 1 and not params.all:
            raise ValueError(f"old text appears {count} times, must be unique (use all=true)")

        updated = content.replace(params.old, params.new) if params.all else content.replace(params.old, params.new, 1)
        file_path.write_text(updated, encoding="utf-8")
        return f"updated: {file_path} occurrences={count if params.all else 1}"

    return tool_from_model(EditInput, _handler, name="fs.edit", description="Replace text in a file")


def create_web_fetch_tool() -> Tool:
    async def _handler(params: WebFetchInput) -> str:
        url = normalize_url(params.url)
        if not url:
            raise ValueError(f"invalid url: {params.url!r}")
        return await asyncio.to_thread(fetch_markdown, url)

    return tool_from_model(
        WebFetchInput, _handler, name="web.fetch", description="Fetch a URL and convert HTML to markdown"
    )


def fetch_markdown(url: str) -> str:
    request = Request(  # noqa: S310 - scheme is validated by normalize_url.
        url,
        headers={
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        },
    )
    with urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:  # noqa: S310
        body_bytes = response.read(MAX_FETCH_BYTES + 1)
        truncated = len(body_bytes) > MAX_FETCH_BYTES
        if truncated:
            body_bytes = body_bytes[:MAX_FETCH_BYTES]
        charset = response.headers.get_content_charset() or "utf-8"

    markdown = html2markdown.convert(body_bytes.decode(charset, errors="replace")).strip()
    if not markdown:
        raise ValueError("empty response body")
    if truncated:
        return f"{markdown}\n\n[truncated: response exceeded byte limit]"
    return cast(str, markdown)


def normalize_url(raw_url: str) -> str | None:
    normalized = raw_url.strip()
    if not normalized:
        return None

    parsed = urllib_parse.urlparse(normalized)
    if parsed.scheme and parsed.netloc:
        if parsed.scheme not in {"http", "https"}:
            return None
        return normalized

    if parsed.scheme == "" and parsed.netloc == "" and parsed.path:
        with_scheme = f"https://{normalized}"
        if urllib_parse.urlparse(with_scheme).netloc:
            return with_scheme

    return None


def register_builtin_tools(registry: ToolRegistry, *, workspace: Path) -> None:
    """Register the filesystem and web tools bound to ``workspace``."""
    for tool, short_description in (
        (create_read_tool(workspace), "Read file content"),
        (create_write_tool(workspace), "Write file content"),
        (create_edit_tool(workspace), "Edit file content"),
        (create_web_fetch_tool(), "Fetch a web page as markdown"),
    ):
        registry.register(
            ToolDescriptor(
                name=tool.name,
                short_description=short_description,
                detail=tool.description,
                tool=tool,
            )
        )
