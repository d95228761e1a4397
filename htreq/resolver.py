"""htreq resolver - {{...}} placeholder resolution over a scope chain."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any

from htreq.errors import CommandError, ExecutionTimeoutError, UnresolvedVariableError

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)

CACHED_COMMAND_PREFIX = ">>"
COMMAND_PREFIX = ">"
ENV_PREFIX = "$"


class Expression:
    """A raw, unresolved variable value as declared in the request file.

    Resolution happens at the point of use, so declarations may refer to
    variables declared later or in another scope.
    """

    __slots__ = ("raw",)

    def __init__(self, raw: str):
        self.raw = raw

    def __repr__(self) -> str:
        return f"Expression({self.raw!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Expression) and other.raw == self.raw

    def __hash__(self) -> int:
        return hash(self.raw)


def run_command(command: str, timeout: float | None = None) -> str:
    """Run a shell command and return stdout without the trailing newline.

    Raises CommandError on a non-zero exit, ExecutionTimeoutError when the
    command outlives the timeout.
    """
    logger.debug("Running command: %s", command)
    try:
        result = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ExecutionTimeoutError(f"Command '{command}' timed out after {timeout}s") from e
    if result.returncode != 0:
        raise CommandError(command, result.returncode, result.stderr)
    return result.stdout.rstrip("\r\n")


def render_value(value: Any) -> str:
    """Render a stored value as placeholder replacement text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value)
    return str(value)


class Scope:
    """The scope chain for one request: local overlay over the global store.

    Environment reads and command execution also go through the scope so
    that they share the run's environment and command cache.
    """

    def __init__(
        self,
        global_store: MutableMapping[str, Any],
        local: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
        command_cache: MutableMapping[str, str] | None = None,
        runner: Callable[[str, float | None], str] | None = None,
        timeout: float | None = None,
    ):
        self.global_store = global_store
        self.local = local if local is not None else {}
        self.env = env if env is not None else os.environ
        self.command_cache = command_cache if command_cache is not None else {}
        self.runner = runner or run_command
        self.timeout = timeout
        self._resolving: list[str] = []

    def has(self, name: str) -> bool:
        return name in self.local or name in self.global_store

    def lookup(self, name: str) -> Any:
        """Return the value bound to name, locals first. Expressions come back resolved."""
        if name in self.local:
            value = self.local[name]
        elif name in self.global_store:
            value = self.global_store[name]
        else:
            raise UnresolvedVariableError(name)

        if not isinstance(value, Expression):
            return value

        if name in self._resolving:
            chain = " -> ".join(self._resolving + [name])
            raise UnresolvedVariableError(name, f"Circular variable reference: {chain}")
        self._resolving.append(name)
        try:
            return self.resolve(value.raw)
        finally:
            self._resolving.pop()

    def run(self, command: str, cached: bool) -> str:
        if cached and command in self.command_cache:
            logger.debug("Command cache hit: %s", command)
            return self.command_cache[command]
        output = self.runner(command, self.timeout)
        if cached:
            self.command_cache[command] = output
        return output

    def resolve(self, text: str | None) -> str:
        """Replace every {{...}} span in text.

        {{$NAME}}   environment variable (missing -> "")
        {{>>cmd}}   shell command, once per run, cached by command text
        {{>cmd}}    shell command, on every reference
        {{name}}    variable, local scope then global scope
        """
        if not text:
            return text or ""

        def _replace(m: re.Match) -> str:
            key = m.group(1).strip()

            if key.startswith(ENV_PREFIX):
                return self.env.get(key[1:].strip(), "")
            if key.startswith(CACHED_COMMAND_PREFIX):
                return self.run(key[2:].strip(), cached=True)
            if key.startswith(COMMAND_PREFIX):
                return self.run(key[1:].strip(), cached=False)

            return render_value(self.lookup(key))

        return PLACEHOLDER_RE.sub(_replace, text)

    def resolve_mapping(self, values: Mapping[str, str]) -> dict[str, str]:
        """Resolve every value of a mapping, keeping key order."""
        return {k: self.resolve(v) for k, v in values.items()}


def resolve(
    expr: str,
    global_store: MutableMapping[str, Any] | None = None,
    local: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    command_cache: MutableMapping[str, str] | None = None,
) -> str:
    """Resolve placeholders in expr against a one-off scope chain."""
    scope = Scope(
        global_store if global_store is not None else {},
        local=local,
        env=env,
        command_cache=command_cache,
    )
    return scope.resolve(expr)
