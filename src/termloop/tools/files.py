"""File tools: create/edit with diffs, numbered text reads, PDF text and images."""

from __future__ import annotations

import asyncio
import base64
import difflib
import io
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Literal

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from termloop.errors import ToolExecutionError
from termloop.events import FileEditEvent, FileReadEvent
from termloop.messages import Message
from termloop.tools.context import ToolContext
from termloop.tools.schemas import CreateOrEditArgs, ReadFileArgs

MAX_LINE_LENGTH = 2000
MAX_BYTES = 50 * 1024
BINARY_EXTENSIONS = frozenset(
    {
        ".zip", ".tar", ".gz", ".exe", ".dll", ".so", ".class", ".jar", ".war", ".7z",
        ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods", ".odp",
        ".bin", ".dat", ".obj", ".o", ".a", ".lib", ".wasm", ".pyc", ".pyo",
    }
)  # fmt: skip
IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
IMAGE_UNSUPPORTED = "Current model does not support image input."
IMAGE_ACK = "let me see"
IMAGE_FOLLOW_UP = "This is the image of the file that was read. Please Continue."

type FileKind = Literal["text", "pdf", "image"]

Replacer = Callable[[str, str], Iterator[str]]


@dataclass(frozen=True)
class EditOutcome:
    output: str
    diff: str
    action: Literal["created", "edited"]
    file_path: str


def _normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n")


def unified_diff(path: str, before: str, after: str) -> str:
    lines = difflib.unified_diff(
        _normalize_line_endings(before).splitlines(keepends=True),
        _normalize_line_endings(after).splitlines(keepends=True),
        fromfile=path,
        tofile=path,
    )
    return "".join(lines)


def _simple(_content: str, find: str) -> Iterator[str]:
    yield find


def _line_trimmed(content: str, find: str) -> Iterator[str]:
    original = content.split("\n")
    search = find.split("\n")
    if search and search[-1] == "":
        search.pop()
    if not search:
        return
    for start in range(len(original) - len(search) + 1):
        window = original[start : start + len(search)]
        if all(a.strip() == b.strip() for a, b in zip(window, search, strict=True)):
            yield "\n".join(window)


def _whitespace_normalized(content: str, find: str) -> Iterator[str]:
    words = find.split()
    if not words:
        return
    pattern = re.compile(r"\s+".join(re.escape(word) for word in words))
    for match in pattern.finditer(content):
        yield match.group(0)


REPLACERS: tuple[Replacer, ...] = (_simple, _line_trimmed, _whitespace_normalized)


def replace(content: str, old: str, new: str, *, replace_all: bool = False) -> str:
    """Replace ``old`` with ``new``, tolerating indentation and whitespace drift."""
    if old == new:
        raise ToolExecutionError("old_string and new_string must be different")

    found = False
    for replacer in REPLACERS:
        for search in replacer(content, old):
            index = content.find(search)
            if index == -1:
                continue
            found = True
            if replace_all:
                return content.replace(search, new)
            if content.rfind(search) != index:
                continue
            return content[:index] + new + content[index + len(search) :]

    if not found:
        raise ToolExecutionError("old_string not found in content")
    raise ToolExecutionError(
        "Found multiple matches for old_string. Provide more surrounding lines in old_string to identify "
        "the correct match, or set replace_all."
    )


async def write_or_edit_file(ctx: ToolContext, terminal_id: str, args: CreateOrEditArgs) -> EditOutcome:
    path = args.file_path
    stat = await ctx.token.guard(ctx.terminal.stat_file(terminal_id, path))
    if stat.exists and stat.is_directory:
        raise ToolExecutionError(f"Path is a directory, not a file: {path}")

    before = ""
    if stat.exists:
        raw = await ctx.token.guard(ctx.terminal.read_file(terminal_id, path))
        before = raw.decode("utf-8", errors="replace")

    if args.content is not None:
        after = args.content
        output = "Wrote file successfully."
    elif args.old_string is None or args.new_string is None:
        raise ToolExecutionError("Provide content, or both old_string and new_string.")
    else:
        if not stat.exists:
            raise ToolExecutionError(f"File not found: {path}")
        after = replace(before, args.old_string, args.new_string, replace_all=args.replace_all)
        output = "Edit applied successfully."

    await ctx.token.guard(ctx.terminal.write_file(terminal_id, path, after))
    return EditOutcome(
        output=output,
        diff=unified_diff(path, before, after),
        action="edited" if stat.exists else "created",
        file_path=path,
    )


async def create_or_edit(ctx: ToolContext, args: CreateOrEditArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    try:
        outcome = await write_or_edit_file(ctx, tab.id, args)
    except ToolExecutionError as exc:
        ctx.emit(FileEditEvent(file_path=args.file_path, action="failed", output=str(exc)))
        raise
    ctx.emit(
        FileEditEvent(file_path=outcome.file_path, action=outcome.action, diff=outcome.diff, output=outcome.output)
    )
    if outcome.diff:
        return f"{outcome.output}\n{outcome.diff}"
    return f"{outcome.output} (no changes)"


def is_binary(path: str, data: bytes) -> bool:
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in BINARY_EXTENSIONS:
        return True
    if suffix == ".py":
        return False
    sample = data[:4096]
    if b"\x00" in sample:
        return True
    if not sample:
        return False
    non_printable = sum(1 for byte in sample if byte < 9 or 13 < byte < 32)
    return non_printable / len(sample) > 0.3


def format_text_file(path: str, data: bytes, *, offset: int, limit: int) -> str:
    if is_binary(path, data):
        raise ToolExecutionError(f"Cannot read binary file: {path}")
    lines = data.decode("utf-8", errors="replace").split("\n")

    selected: list[str] = []
    used = 0
    truncated_by_bytes = False
    for line in lines[offset : offset + limit]:
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + "..."
        size = len(line.encode("utf-8")) + (1 if selected else 0)
        if used + size > MAX_BYTES:
            truncated_by_bytes = True
            break
        selected.append(line)
        used += size

    numbered = [f"{offset + index + 1:05d}| {line}" for index, line in enumerate(selected)]
    last_read = offset + len(selected)
    if truncated_by_bytes:
        footer = f"(Output truncated at {MAX_BYTES} bytes. Use 'offset' parameter to read beyond line {last_read})"
    elif len(lines) > last_read:
        footer = f"(File has more lines. Use 'offset' parameter to read beyond line {last_read})"
    else:
        footer = f"(End of file - total {len(lines)} lines)"
    return "<file>\n" + "\n".join(numbered) + f"\n\n{footer}\n</file>"


def sniff_image_mime(data: bytes) -> str | None:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def detect_file_kind(path: str, data: bytes) -> FileKind:
    suffix = PurePosixPath(path).suffix.lower()
    if data.startswith(b"%PDF-") or suffix == ".pdf":
        return "pdf"
    if sniff_image_mime(data) is not None or suffix in IMAGE_MIME_TYPES:
        return "image"
    return "text"


def extract_pdf_text(path: str, data: bytes) -> str:
    """Plain text of every page that has any, blank-line separated."""
    try:
        reader = PdfReader(io.BytesIO(data))
        chunks = [text.strip() for page in reader.pages if (text := page.extract_text() or "").strip()]
    except PyPdfError as exc:
        raise ToolExecutionError(f"Unable to read PDF {path}: {exc}") from exc
    return "\n\n".join(chunks) or f"No extractable text found in PDF: {path}"


def image_messages(path: str, data: bytes) -> list[Message]:
    """The assistant/user pair that hands an image file to a vision model."""
    suffix = PurePosixPath(path).suffix.lower()
    mime = sniff_image_mime(data) or IMAGE_MIME_TYPES.get(suffix, "application/octet-stream")
    url = f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
    return [
        Message.assistant(IMAGE_ACK),
        Message.user(
            IMAGE_FOLLOW_UP,
            content_parts=[
                {"type": "text", "text": IMAGE_FOLLOW_UP},
                {"type": "image_url", "image_url": {"url": url}},
            ],
        ),
    ]


async def read_file(ctx: ToolContext, args: ReadFileArgs) -> str:
    tab = ctx.resolve_tab(args.tab_id_or_name)
    path = args.file_path
    try:
        stat = await ctx.token.guard(ctx.terminal.stat_file(tab.id, path))
        if not stat.exists:
            raise ToolExecutionError(f"File not found: {path}")
        if stat.is_directory:
            raise ToolExecutionError(f"Path is a directory, not a file: {path}")
        data = await ctx.token.guard(ctx.terminal.read_file(tab.id, path))
        kind = detect_file_kind(path, data)
        if kind == "image":
            if not ctx.image_inputs:
                raise ToolExecutionError(IMAGE_UNSUPPORTED)
            ctx.attach(*image_messages(path, data))
            text = "Image read successfully."
        elif kind == "pdf":
            text = await ctx.token.guard(asyncio.to_thread(extract_pdf_text, path, data))
        else:
            text = format_text_file(path, data, offset=args.offset, limit=args.limit)
    except ToolExecutionError as exc:
        ctx.emit(FileReadEvent(file_path=path, level="warning", output=str(exc)))
        raise
    summary = f"lines {args.offset + 1}+" if kind == "text" else kind
    ctx.emit(FileReadEvent(file_path=path, output=summary))
    return text
