"""htreq parser - request file text to Document.

Grammar (line oriented, one forward pass):

    @baseUrl = http://localhost:8000      global variable
    @cfg.timeout = 10                     document-wide config override

    ### #login                            opens request "login"
    @user = admin                         local variable
    @cfg.insecure = true                  request config override
    POST {{baseUrl}}/login                request line (optional)
    Content-Type: application/json        header
    debug=1                               query parameter
                                          blank line ends headers/query
    {"user": "{{user}}"}                  body, verbatim

    <?
    #pre
    api.set('started', True)
    #post
    api.set('token', response.json()['token'])
    ?>
"""

from __future__ import annotations

import re
import textwrap
from dataclasses import dataclass, field
from pathlib import Path

from htreq.errors import ParseError

BLOCK_RE = re.compile(r"^###\s+#([A-Za-z0-9_.\-]+)\s*$")
VARIABLE_RE = re.compile(r"^@([A-Za-z_][A-Za-z0-9_.\-]*)\s*=(.*)$")
REQUEST_LINE_RE = re.compile(r"^([A-Z]+)\s+(.+?)(?:\s+HTTP/\d(?:\.\d)?)?\s*$")
HEADER_RE = re.compile(r"^([!#$%&'*+.^_`|~0-9A-Za-z-]+):(.*)$")
SCRIPT_OPEN_RE = re.compile(r"^<\?(?:hook)?\s*$")
SCRIPT_CLOSE_RE = re.compile(r"^\?>\s*$")
PRE_MARKER = "#pre"
POST_MARKER = "#post"

CONFIG_PREFIX = "cfg."
CONFIG_KEYS = {
    "timeout": "timeout",
    "insecure": "insecure",
    "proxy": "proxy",
    "dry-run": "dry_run",
    "dry_run": "dry_run",
}


@dataclass(frozen=True)
class RequestDef:
    """One named request block."""

    name: str
    method: str | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: str = ""
    variables: dict[str, str] = field(default_factory=dict)
    pre_script: str = ""
    post_script: str = ""
    config: dict[str, str] = field(default_factory=dict)
    line: int = 0

    @property
    def is_script_only(self) -> bool:
        return self.method is None


@dataclass(frozen=True)
class Document:
    """Parsed request file: globals, document config and ordered requests."""

    variables: dict[str, str] = field(default_factory=dict)
    requests: dict[str, RequestDef] = field(default_factory=dict)
    config: dict[str, str] = field(default_factory=dict)
    source: str = "<string>"

    def get(self, name: str) -> RequestDef | None:
        return self.requests.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.requests


class _Block:
    """Mutable accumulator for a request block while it is being parsed."""

    def __init__(self, name: str, line: int):
        self.name = name
        self.line = line
        self.method: str | None = None
        self.url: str | None = None
        self.headers: dict[str, str] = {}
        self.query: dict[str, str] = {}
        self.body_lines: list[str] = []
        self.variables: dict[str, str] = {}
        self.config: dict[str, str] = {}
        self.pre: list[str] = []
        self.post: list[str] = []

    def build(self) -> RequestDef:
        return RequestDef(
            name=self.name,
            method=self.method,
            url=self.url,
            headers=self.headers,
            query=self.query,
            body=_trim_blank_lines(self.body_lines),
            variables=self.variables,
            pre_script="\n".join(self.pre),
            post_script="\n".join(self.post),
            config=self.config,
            line=self.line,
        )


# Block states
_VARS = "vars"  # locals / config, before the request line
_HEADERS = "headers"  # after the request line, before the blank line
_BODY = "body"  # after the blank line
_AFTER_SCRIPT = "after_script"  # after a closed hook block


class _Parser:
    def __init__(self, text: str, source: str):
        self.lines = text.splitlines()
        self.source = source
        self.globals: dict[str, str] = {}
        self.doc_config: dict[str, str] = {}
        self.requests: dict[str, RequestDef] = {}
        self.block: _Block | None = None
        self.state = _VARS
        self.index = 0

    def error(self, message: str, line_no: int | None = None) -> ParseError:
        if line_no is None:
            line_no = self.index + 1
        line = self.lines[line_no - 1] if 0 < line_no <= len(self.lines) else ""
        return ParseError(message, line_no, line, self.source)

    def parse(self) -> Document:
        while self.index < len(self.lines):
            line = self.lines[self.index]
            m = BLOCK_RE.match(line)
            if m:
                self._open_block(m.group(1))
            elif self.block is None:
                self._preamble_line(line)
            elif SCRIPT_OPEN_RE.match(line.strip()):
                self._script_block()
            else:
                self._block_line(line)
            self.index += 1
        self._close_block()
        return Document(
            variables=self.globals,
            requests=self.requests,
            config=self.doc_config,
            source=self.source,
        )

    # ── preamble ─────────────────────────────────────────────────────────

    def _preamble_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return
        if self._declaration(stripped, self.globals, self.doc_config):
            return
        raise self.error("Expected a variable declaration or a '### #name' block marker")

    def _declaration(self, stripped: str, variables: dict, config: dict) -> bool:
        m = VARIABLE_RE.match(stripped)
        if not m:
            return False
        name, value = m.group(1), m.group(2).strip()
        if name.startswith(CONFIG_PREFIX):
            key = name[len(CONFIG_PREFIX):]
            if key not in CONFIG_KEYS:
                raise self.error(
                    f"Unknown config key '{key}' (expected one of: timeout, insecure, proxy, dry-run)"
                )
            config[CONFIG_KEYS[key]] = value
        elif "." in name:
            raise self.error(f"Invalid variable name '{name}'")
        else:
            variables[name] = value
        return True

    # ── blocks ───────────────────────────────────────────────────────────

    def _open_block(self, name: str) -> None:
        self._close_block()
        if name in self.requests:
            raise self.error(f"Duplicate request name '{name}'")
        self.block = _Block(name, self.index + 1)
        self.state = _VARS

    def _close_block(self) -> None:
        if self.block is not None:
            self.requests[self.block.name] = self.block.build()
            self.block = None

    def _block_line(self, line: str) -> None:
        block = self.block
        stripped = line.strip()

        if self.state == _BODY:
            block.body_lines.append(line)
            return

        if self.state == _AFTER_SCRIPT:
            if stripped and not stripped.startswith("#"):
                raise self.error("Unexpected text after hook block")
            return

        if self.state == _VARS:
            if not stripped or stripped.startswith("#"):
                return
            if self._declaration(stripped, block.variables, block.config):
                return
            m = REQUEST_LINE_RE.match(stripped)
            if not m:
                raise self.error("Expected '<METHOD> <url>' request line")
            block.method, block.url = m.group(1), m.group(2)
            self.state = _HEADERS
            return

        # _HEADERS
        if not stripped:
            self.state = _BODY
            return
        if stripped.startswith("#"):
            return
        m = HEADER_RE.match(stripped)
        if m:
            block.headers[m.group(1)] = m.group(2).strip()
            return
        if "=" in stripped:
            key, value = stripped.split("=", 1)
            block.query[key.strip()] = value.strip()
            return
        raise self.error("Expected 'Name: value' header, 'key=value' query parameter or a blank line")

    def _script_block(self) -> None:
        block = self.block
        start = self.index + 1
        pre: list[str] = []
        post: list[str] = []
        section = post
        self.index += 1
        while self.index < len(self.lines):
            line = self.lines[self.index]
            stripped = line.strip()
            if SCRIPT_CLOSE_RE.match(stripped):
                break
            if stripped == PRE_MARKER:
                section = pre
            elif stripped == POST_MARKER:
                section = post
            else:
                section.append(line)
            self.index += 1
        else:
            raise self.error("Unterminated hook block (missing '?>')", start)

        for source_lines, target in ((pre, block.pre), (post, block.post)):
            text = textwrap.dedent("\n".join(source_lines)).strip("\n")
            if text.strip():
                target.append(text)
        self.state = _AFTER_SCRIPT


def _trim_blank_lines(lines: list[str]) -> str:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


def parse(text: str, source: str = "<string>") -> Document:
    """Parse request-file text into a Document. Raises ParseError."""
    return _Parser(text, source).parse()


def parse_file(path: str | Path) -> Document:
    """Read a UTF-8 request file and parse it."""
    p = Path(path)
    return parse(p.read_text(encoding="utf-8"), source=str(p))
