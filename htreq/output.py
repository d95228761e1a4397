"""htreq output - terse and verbose rendering of a run."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from htreq.engine import Exchange, RunResult

REQUEST_BANNER = "=== REQUEST #{name} ==="
RESPONSE_BANNER = "=== RESPONSE #{name} ==="
OUTPUT_BANNER = "=== OUTPUT #{name} ==="
DRY_RUN_NOTE = "(dry run: not sent)"
SCRIPT_ONLY_NOTE = "(script only: no request)"


def format_terse(exchange: Exchange) -> str:
    """Body only.

    - raw response body when no hook called write/append
    - write's text when write was called (last write wins)
    - body + appended text when only append was called
    - write's text + appended text when both were called
    """
    body = exchange.response.body if exchange.response is not None else ""
    return exchange.output.render(body)


def format_verbose(exchange: Exchange) -> str:
    """Full request and response detail inside fixed banners, then hook output."""
    lines: list[str] = [REQUEST_BANNER.format(name=exchange.name)]

    request = exchange.request
    if request is None:
        lines.append(SCRIPT_ONLY_NOTE)
    else:
        lines.append(f"{request.method} {request.url}")
        for key, value in request.headers.items():
            lines.append(f"{key}: {value}")
        if request.body:
            lines.append("")
            lines.append(request.body)

    if request is not None:
        lines.append(RESPONSE_BANNER.format(name=exchange.name))
        response = exchange.response
        if response is None:
            lines.append(DRY_RUN_NOTE)
        else:
            lines.append(f"STATUS: {response.status_code}")
            for key, value in response.headers.items():
                lines.append(f"{key}: {value}")
            if response.body:
                lines.append("")
                lines.append(response.body)

    if exchange.output.touched:
        lines.append(OUTPUT_BANNER.format(name=exchange.name))
        lines.append(exchange.output.text)

    return "\n".join(lines)


def format_output(result: RunResult, verbose: bool = False) -> str:
    """Render a run.

    Terse mode shows the start request's body. A script-only start that
    produced no output of its own shows what its chained requests wrote
    instead. Verbose mode shows every exchange of the run, nested sends
    included, in completion order.
    """
    if not verbose:
        start = result.exchange
        if start.script_only and not start.output.touched:
            return format_chained(result.exchanges)
        return format_terse(start)
    return "\n\n".join(format_verbose(exchange) for exchange in result.exchanges)


def format_chained(exchanges: list[Exchange]) -> str:
    """Terse text of every exchange whose hooks wrote or appended, one per line."""
    return "\n".join(format_terse(e) for e in exchanges if e.output.touched)
