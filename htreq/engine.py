"""htreq engine - runs named requests: resolve, hooks, send, record.

Each request goes through:

    Resolve-Locals -> Pre-Hook -> Substitute -> Send -> Post-Hook -> record Exchange

api.send(name) inside a hook re-enters Engine.send with the same
ExecutionContext, so nested requests share the global store and the
command cache and complete before the hook statement returns.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from htreq import executor
from htreq.core import DEFAULT_MAX_DEPTH, RequestConfig
from htreq.errors import JsonDecodeError, RecursionDepthError, UnknownRequestError
from htreq.hooks import Api, HookRequest, HookResponse, Output, compile_hook, run_hook
from htreq.parser import Document, RequestDef
from htreq.resolver import Expression, Scope

logger = logging.getLogger(__name__)

Transport = Callable[..., executor.Response]


@dataclass
class PreparedRequest:
    """A fully substituted request, as handed to the transport."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass
class Exchange:
    """One completed request of a run."""

    name: str
    depth: int
    output: Output
    request: PreparedRequest | None = None
    response: HookResponse | None = None
    dry_run: bool = False
    elapsed_ms: float = 0

    @property
    def script_only(self) -> bool:
        return self.request is None


class ExecutionContext:
    """State owned by one invocation and shared by every nested send.

    globals:        variable store; document globals are seeded as
                    Expressions, hooks add plain values via api.set
    command_cache:  {{>>cmd}} results keyed by exact command text
    exchanges:      completed requests, in completion order
    warnings:       hook failures that did not abort the run
    """

    def __init__(
        self,
        document: Document,
        global_store: MutableMapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.globals: MutableMapping[str, Any] = global_store if global_store is not None else {}
        for name, raw in document.variables.items():
            self.globals.setdefault(name, Expression(raw))
        self.command_cache: dict[str, str] = {}
        self.env: Mapping[str, str] = env if env is not None else dict(os.environ)
        self.depth = 0
        self.exchanges: list[Exchange] = []
        self.warnings: list[str] = []
        self.root_output: Output | None = None
        self.root_request: RequestDef | None = None


class RunResult:
    """Outcome of Engine.execute: the start request's exchange plus the whole run."""

    def __init__(self, exchange: Exchange, context: ExecutionContext):
        self.exchange = exchange
        self.exchanges = list(context.exchanges)
        self.warnings = list(context.warnings)
        self.context = context

    def render(self, verbose: bool = False) -> str:
        from htreq.output import format_output

        return format_output(self, verbose=verbose)


class Engine:
    """Executes requests of one parsed Document.

    Hooks are compiled up front so that malformed hook code fails before
    any network activity.
    """

    def __init__(
        self,
        document: Document,
        config: RequestConfig | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        transport: Transport | None = None,
        runner: Callable[[str, float | None], str] | None = None,
    ):
        self.document = document
        self.config = config or RequestConfig()
        self.max_depth = max_depth
        self._transport = transport
        self._runner = runner
        self._hooks = {
            name: (
                compile_hook(req.pre_script, f"#{name} pre-hook"),
                compile_hook(req.post_script, f"#{name} post-hook"),
            )
            for name, req in document.requests.items()
        }

    def new_context(
        self,
        global_store: MutableMapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(self.document, global_store, env)

    def execute(self, name: str = "main", context: ExecutionContext | None = None) -> RunResult:
        """Run the named request (and whatever its hooks send)."""
        if context is None:
            context = self.new_context()
        exchange = self.send(name, context)
        return RunResult(exchange, context)

    def send(self, name: str, context: ExecutionContext) -> Exchange:
        """Run one request to completion, nested inside the current one if any."""
        req = self.document.get(name)
        if req is None:
            raise UnknownRequestError(name)
        if self.max_depth and context.depth >= self.max_depth:
            raise RecursionDepthError(
                f"Maximum request depth ({self.max_depth}) exceeded at '{name}' "
                "(do the requests send each other in a cycle?)"
            )

        context.depth += 1
        logger.debug("%s-> #%s", "  " * (context.depth - 1), name)
        try:
            exchange = self._run(req, context)
        except RecursionError as e:
            raise RecursionDepthError(
                f"Request chain exhausted the interpreter stack at '{name}' "
                "(do the requests send each other in a cycle?)"
            ) from e
        finally:
            context.depth -= 1

        context.exchanges.append(exchange)
        logger.debug("%s<- #%s", "  " * context.depth, name)
        return exchange

    # ── state machine ────────────────────────────────────────────────────

    def _run(self, req: RequestDef, context: ExecutionContext) -> Exchange:
        output = Output()
        if context.depth == 1:
            context.root_output = output
            context.root_request = req

        # Resolve-Locals
        local = {name: Expression(raw) for name, raw in req.variables.items()}
        scope = Scope(
            context.globals,
            local=local,
            env=context.env,
            command_cache=context.command_cache,
            runner=self._runner,
        )
        config = self._effective_config(req, scope)
        scope.timeout = config.timeout

        api = Api(scope, lambda target: self._hook_send(target, context))
        pre_hook, post_hook = self._hooks[req.name]
        depth = context.depth

        if req.is_script_only:
            bindings = {"api": api, "output": output, "request": None, "response": None}
            self._run_hook(pre_hook, bindings, context, f"#{req.name} pre-hook")
            self._run_hook(post_hook, bindings, context, f"#{req.name} post-hook")
            return Exchange(req.name, depth, output)

        hook_request = HookRequest(req.method, req.url, req.headers, req.body, req.query)
        bindings = {"api": api, "output": output, "request": hook_request, "response": None}
        self._run_hook(pre_hook, bindings, context, f"#{req.name} pre-hook")

        prepared = self._substitute(hook_request, scope)
        hook_request.method = prepared.method
        hook_request.url = prepared.url
        hook_request.headers = prepared.headers
        hook_request.body = prepared.body
        hook_request.freeze()

        response = None
        elapsed_ms = 0.0
        if config.dry_run:
            logger.debug("dry run, not sending #%s", req.name)
        else:
            raw = self._transport_call(prepared, config)
            response = HookResponse(raw.status_code, raw.headers, raw.body)
            elapsed_ms = raw.elapsed_ms

        bindings["response"] = response
        self._run_hook(post_hook, bindings, context, f"#{req.name} post-hook")

        return Exchange(
            req.name,
            depth,
            output,
            request=prepared,
            response=response,
            dry_run=config.dry_run,
            elapsed_ms=elapsed_ms,
        )

    def _effective_config(self, req: RequestDef, scope: Scope) -> RequestConfig:
        config = self.config
        for overrides in (self.document.config, req.config):
            if overrides:
                # commands inside overrides run under the inherited timeout
                scope.timeout = config.timeout
                config = config.merge(scope.resolve_mapping(overrides))
        return config

    def _substitute(self, hook_request: HookRequest, scope: Scope) -> PreparedRequest:
        url = scope.resolve(str(hook_request.url))
        query = scope.resolve_mapping(hook_request.query)
        if query:
            url += ("&" if "?" in url else "?") + urlencode(query)
        return PreparedRequest(
            method=scope.resolve(str(hook_request.method)).upper(),
            url=url,
            headers={str(k): scope.resolve(str(v)) for k, v in hook_request.headers.items()},
            body=scope.resolve(str(hook_request.body or "")),
        )

    def _transport_call(self, prepared: PreparedRequest, config: RequestConfig) -> executor.Response:
        transport = self._transport or executor.execute_request
        return transport(
            method=prepared.method,
            url=prepared.url,
            headers=prepared.headers,
            body=prepared.body or None,
            timeout=config.timeout,
            insecure=config.insecure,
            proxy=config.proxy,
        )

    def _run_hook(self, tree, bindings: dict[str, Any], context: ExecutionContext, label: str) -> None:
        try:
            run_hook(tree, bindings, label)
        except JsonDecodeError as e:
            message = f"{label}: {e}"
            logger.debug("hook aborted: %s", message)
            context.warnings.append(message)

    def _hook_send(self, name: str, context: ExecutionContext) -> HookResponse | None:
        return self.send(name, context).response


def execute(
    document: Document,
    start_name: str = "main",
    global_store: MutableMapping[str, Any] | None = None,
    verbose: bool = False,
    **engine_options: Any,
) -> str:
    """Run start_name from document and return the formatted output."""
    engine = Engine(document, **engine_options)
    result = engine.execute(start_name, engine.new_context(global_store))
    return result.render(verbose=verbose)
