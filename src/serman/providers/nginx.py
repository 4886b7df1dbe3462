"""Nginx provider for maintaining serman's region of the shared nginx.conf.

serman owns exactly one region of the nginx configuration, delimited by the
``#---SERMAN---#`` and ``#---ENDSERMAN---#`` comment lines. Everything outside
that region belongs to the operator and is preserved byte-for-byte.

Patching works on one of three layouts detected by :func:`classify`:

``SentinelRegion``
    Both markers are present; only the lines between them (inclusive) are
    replaced.
``HttpBlock``
    No region yet, but a top-level ``http { ... }`` block exists; the region is
    inserted just before that block's closing brace.
``Unrecognized``
    Neither was found (empty file, unbalanced braces, no ``http`` block); the
    file is replaced with a minimal skeleton that contains the region.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ConfigParseError, PermissionDeniedError, SermanError
from ..models import AppRecord
from ..runner import CommandRunner
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

START_MARKER = "#---SERMAN---#"
END_MARKER = "#---ENDSERMAN---#"
INDENT = "    "

_TOKEN_BREAKS = "{};#\"'"


class NginxError(SermanError):
    """Raised when nginx operations fail."""


@dataclass(frozen=True, slots=True)
class SentinelRegion:
    """Layout where the serman region already exists."""

    start: int
    end: int


@dataclass(frozen=True, slots=True)
class HttpBlock:
    """Layout with a top-level ``http`` block but no serman region."""

    source: str
    open_offset: int
    close_offset: int
    indent: str


@dataclass(frozen=True, slots=True)
class Unrecognized:
    """Layout where no usable structure was found."""

    reason: str


ProxyLayout = SentinelRegion | HttpBlock | Unrecognized


@dataclass(slots=True)
class NginxApplyResult:
    """Outcome of writing the nginx configuration."""

    layout: str
    changed: bool
    staging_file: Path


def find_http_block(content: str) -> tuple[int, int]:
    """Return the offsets of the top-level ``http`` block's braces.

    Comments and quoted strings are skipped while tracking brace depth. Raises
    :class:`ConfigParseError` when the braces are unbalanced or no top-level
    ``http`` block exists.
    """
    depth = 0
    pending_http = False
    open_offset: int | None = None
    index = 0
    length = len(content)
    while index < length:
        char = content[index]
        if char == "#":
            newline = content.find("\n", index)
            index = length if newline == -1 else newline + 1
            continue
        if char in "\"'":
            index = _skip_quoted(content, index)
            continue
        if char == "{":
            if depth == 0 and pending_http and open_offset is None:
                open_offset = index
            depth += 1
            pending_http = False
        elif char == "}":
            depth -= 1
            if depth < 0:
                raise ConfigParseError(f"Unbalanced closing brace at offset {index}.")
            if depth == 0 and open_offset is not None:
                return open_offset, index
            pending_http = False
        elif char == ";":
            pending_http = False
        elif not char.isspace():
            end = index
            while end < length and not content[end].isspace() and content[end] not in _TOKEN_BREAKS:
                end += 1
            if depth == 0:
                pending_http = content[index:end] == "http"
            index = end
            continue
        index += 1
    if open_offset is not None:
        raise ConfigParseError("The http block is never closed.")
    raise ConfigParseError("No top-level http block found.")


def _skip_quoted(content: str, index: int) -> int:
    quote = content[index]
    cursor = index + 1
    while cursor < len(content):
        if content[cursor] == "\\":
            cursor += 2
            continue
        if content[cursor] == quote:
            return cursor + 1
        cursor += 1
    raise ConfigParseError(f"Unterminated string starting at offset {index}.")


def _find_markers(lines: Sequence[str]) -> tuple[int | None, int | None]:
    start: int | None = None
    for index, line in enumerate(lines):
        if start is None and START_MARKER in line:
            start = index
            if END_MARKER in line[line.index(START_MARKER) + len(START_MARKER) :]:
                return start, index
        elif start is not None and END_MARKER in line:
            return start, index
    return start, None


def _strip_stray_markers(content: str) -> str:
    lines = content.splitlines(keepends=True)
    kept = [
        line for line in lines if line.strip() not in (START_MARKER, END_MARKER)
    ]
    return "".join(kept)


def _leading_whitespace(text: str) -> str:
    return text[: len(text) - len(text.lstrip(" \t"))]


def classify(content: str) -> ProxyLayout:
    """Detect which of the three patchable layouts *content* uses."""
    lines = content.splitlines(keepends=True)
    start, end = _find_markers(lines)
    if start is not None and end is not None:
        return SentinelRegion(start=start, end=end)

    source = _strip_stray_markers(content)
    try:
        open_offset, close_offset = find_http_block(source)
    except ConfigParseError as exc:
        return Unrecognized(reason=str(exc))
    line_start = source.rfind("\n", 0, open_offset) + 1
    indent = _leading_whitespace(source[line_start:open_offset]) + INDENT
    return HttpBlock(
        source=source,
        open_offset=open_offset,
        close_offset=close_offset,
        indent=indent,
    )


def _indent_block(block: str, indent: str) -> list[str]:
    return [f"{indent}{line}" if line.strip() else "" for line in block.splitlines()]


@dataclass(slots=True)
class NginxProvider:
    """Render server blocks and patch them into the shared nginx config."""

    templates: TemplateEngine
    runner: CommandRunner
    config_file: Path = Path("/etc/nginx/nginx.conf")
    staging_file: Path = Path("/var/lib/serman/nginx.conf")
    reload_command: tuple[str, ...] = ("systemctl", "restart", "nginx")
    elevate: bool = False
    reload_retries: int = 3
    reload_backoff: float = 0.5

    def server_block(self, record: AppRecord) -> str:
        """Return the server block for *record* (empty when it has no domains).

        A non-empty ``config`` override is used verbatim. Apps that are not bound
        to a port answer ``503`` until they are pointed somewhere.
        """
        if record.config.strip():
            return record.config.strip("\n").rstrip()
        if not record.domains:
            return ""
        rendered = self.templates.render_to_string(
            "nginx/server.conf.j2",
            {
                "domains": record.domains,
                "port": record.port,
                "active": record.is_active,
            },
        )
        return rendered.rstrip()

    def render_region(self, records: Iterable[AppRecord], indent: str = INDENT) -> str:
        """Return the sentinel-delimited region for *records*, in order."""
        lines = [f"{indent}{START_MARKER}"]
        first = True
        for record in records:
            block = self.server_block(record)
            if not block:
                continue
            if not first:
                lines.append("")
            lines.extend(_indent_block(block, indent))
            first = False
        lines.append(f"{indent}{END_MARKER}")
        return "\n".join(lines)

    def merge(self, content: str, records: Sequence[AppRecord]) -> str:
        """Return *content* with the serman region regenerated from *records*."""
        layout = classify(content)
        if isinstance(layout, SentinelRegion):
            return self._replace_region(content, layout, records)
        if isinstance(layout, HttpBlock):
            return self._insert_region(layout, records)
        return self._synthesize_skeleton(layout, records)

    def apply(self, records: Sequence[AppRecord]) -> NginxApplyResult:
        """Merge *records* into the nginx config, install it and reload nginx.

        The merged text is always written to ``staging_file`` first so the last
        attempted merge can be inspected even if installing it fails.
        """
        self._ensure_config_exists()
        if not self.elevate and not os.access(self.config_file, os.W_OK):
            raise PermissionDeniedError(self.config_file)
        try:
            current = self.config_file.read_text(encoding="utf-8")
        except PermissionError as exc:
            raise PermissionDeniedError(self.config_file) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise NginxError(f"Failed to read nginx config {self.config_file}: {exc}") from exc

        layout = classify(current)
        merged = self.merge(current, records)

        try:
            self.staging_file.parent.mkdir(parents=True, exist_ok=True)
            self.staging_file.write_text(merged, encoding="utf-8")
        except OSError as exc:
            raise NginxError(
                f"Failed to write nginx staging file {self.staging_file}: {exc}"
            ) from exc
        self.runner.run(
            ["cp", str(self.staging_file), str(self.config_file)],
            elevate=self.elevate,
        )
        self.reload()
        return NginxApplyResult(
            layout=type(layout).__name__,
            changed=merged != current,
            staging_file=self.staging_file,
        )

    def reload(self) -> str:
        """Reload nginx, retrying transient failures."""
        return self.runner.run_with_retry(
            list(self.reload_command),
            attempts=self.reload_retries,
            backoff=self.reload_backoff,
            elevate=self.elevate,
        )

    # ------------------------------------------------------------------
    def _ensure_config_exists(self) -> None:
        if self.config_file.exists():
            return
        if self.elevate:
            self.runner.run(["touch", str(self.config_file)], elevate=True)
            return
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            self.config_file.touch()
        except PermissionError as exc:
            raise PermissionDeniedError(self.config_file) from exc
        except OSError as exc:
            raise NginxError(f"Failed to create nginx config {self.config_file}: {exc}") from exc

    def _replace_region(
        self,
        content: str,
        layout: SentinelRegion,
        records: Sequence[AppRecord],
    ) -> str:
        lines = content.splitlines(keepends=True)
        start_line = lines[layout.start]
        end_line = lines[layout.end]
        prefix = start_line[: start_line.index(START_MARKER)]
        indent = _leading_whitespace(start_line)
        search_from = len(prefix) + len(START_MARKER) if layout.start == layout.end else 0
        suffix = end_line[end_line.index(END_MARKER, search_from) + len(END_MARKER) :]
        region = self.render_region(records, indent)
        return (
            "".join(lines[: layout.start])
            + prefix
            + region[len(indent) :]
            + suffix
            + "".join(lines[layout.end + 1 :])
        )

    def _insert_region(self, layout: HttpBlock, records: Sequence[AppRecord]) -> str:
        source = layout.source
        close = layout.close_offset
        region = self.render_region(records, layout.indent)
        line_start = source.rfind("\n", 0, close) + 1
        if source[line_start:close].strip():
            closing_indent = layout.indent[: -len(INDENT)]
            return source[:close] + "\n" + region + "\n" + closing_indent + source[close:]
        return source[:line_start] + region + "\n" + source[line_start:]

    def _synthesize_skeleton(
        self,
        layout: Unrecognized,
        records: Sequence[AppRecord],
    ) -> str:
        LOGGER.warning(
            "nginx config %s has no usable http block (%s); writing a fresh skeleton",
            self.config_file,
            layout.reason,
        )
        return self.templates.render_to_string(
            "nginx/skeleton.conf.j2",
            {"region": self.render_region(records, INDENT)},
        )


__all__ = [
    "END_MARKER",
    "HttpBlock",
    "NginxApplyResult",
    "NginxError",
    "NginxProvider",
    "ProxyLayout",
    "START_MARKER",
    "SentinelRegion",
    "Unrecognized",
    "classify",
    "find_http_block",
]
