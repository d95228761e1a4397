"""htreq CLI - run named requests from a request file."""

import logging
import sys

import click

from htreq.errors import HtreqError

TOOL_HELP = """\
htreq — run named HTTP requests from a request file.

\b
USAGE
─────
  htreq FILE [NAME]          Run request NAME (default: main), print the body
  htreq FILE NAME -a         Print full request/response detail
  htreq FILE --list          List the requests defined in FILE

\b
REQUEST FILE
────────────
  @baseUrl = http://localhost:8000          global variable
  @cfg.timeout = 10                         config: timeout, insecure, proxy, dry-run

  ### #login
  @user = admin                             local variable (shadows globals)
  POST {{baseUrl}}/login
  Content-Type: application/json            header
  verbose=1                                 query parameter

  {"user": "{{user}}", "password": "{{$PASSWORD}}"}

  <?
  #post
  api.set('token', response.json()['token'])
  ?>

\b
PLACEHOLDERS
────────────
  {{name}}       variable: request locals, then globals (incl. api.set)
  {{$NAME}}      environment variable (empty when unset)
  {{>cmd}}       shell command output, run on every reference
  {{>>cmd}}      shell command output, run once per invocation and cached

\b
HOOKS
─────
  Hook blocks sit between '<?' and '?>' lines. '#pre' runs before the
  request is substituted and sent, '#post' after the response arrived.
  Without markers the whole block is a post-hook.

  \b
  api.set(key, value)     set a global variable
  api.get(key)            read a variable (None when undefined)
  api.send(name)          run another request now, returns its response
  output.write(text)      replace the printed body
  output.append(text)     add text after the printed body
  request.url, .method, .headers, .query, .body   (writable in #pre)
  response.status_code, .headers, .body, .json()

  Hooks use a small Python-like language: assignments, if/elif/else,
  for/while loops, arithmetic, comparisons, f-strings, list
  comprehensions and a handful of builtins (len, int, str, range, sum...).

\b
CONFIG FILE (.htreq.yaml)
─────────────────────────
  Resolution order:
    1. -c/--config flag (explicit path)
    2. .htreq.yaml / .htreq.yml / htreq.yaml / htreq.yml in CWD
    3. ~/.htreq/config.yaml (global)

  \b
  defaults:
    timeout: 30                 # seconds, network calls and commands
    insecure: false             # skip TLS verification
    proxy: ${HTTP_PROXY}        # env var resolved at runtime
    env_file: .env              # merged over the OS environment
    max_depth: 32               # nested api.send limit, 0 = unlimited
    verbose: false
"""

_log_handler: logging.Handler | None = None


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("file", type=click.Path(dir_okay=False))
@click.argument("request_name", required=False, default="main")
@click.option(
    "-a",
    "--all",
    "verbose",
    is_flag=True,
    default=False,
    help="Verbose output: full request and response detail.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .htreq.yaml in CWD, then ~/.htreq/config.yaml.",
)
@click.option(
    "-e",
    "--env-file",
    "env_file",
    default=None,
    help=".env file merged over the OS environment for {{$NAME}} placeholders.",
)
@click.option(
    "-v",
    "--var",
    multiple=True,
    help="Global variable as key=value. Overrides the file's declaration. Repeatable.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Timeout in seconds for network calls and shell commands. Default: 30.",
)
@click.option(
    "-k",
    "--insecure",
    is_flag=True,
    default=False,
    help="Skip TLS certificate verification.",
)
@click.option("--proxy", default=None, help="Proxy URL for all requests.")
@click.option(
    "--dry-run",
    "dry_run",
    is_flag=True,
    default=False,
    help="Resolve and run hooks but do not send anything.",
)
@click.option(
    "--max-depth",
    "max_depth",
    type=int,
    default=None,
    help="Maximum nesting of api.send calls. 0 disables the limit. Default: 32.",
)
@click.option(
    "--list",
    "show_list",
    is_flag=True,
    default=False,
    help="List the requests defined in FILE.",
)
@click.option("--debug", is_flag=True, default=False, help="Log debug details to stderr.")
def main(
    file,
    request_name,
    verbose,
    config_file,
    env_file,
    var,
    timeout,
    insecure,
    proxy,
    dry_run,
    max_depth,
    show_list,
    debug,
):
    """Run a named request from a request file."""
    from htreq.core import (
        DEFAULT_MAX_DEPTH,
        build_request_config,
        load_config,
        load_env,
        parse_bool,
        parse_max_depth,
        resolve_config_path,
    )
    from htreq.engine import Engine
    from htreq.parser import parse_file

    _setup_logging(debug)

    context = None
    try:
        # --- Load config ---
        config_path = resolve_config_path(config_file)
        if config_file and config_path is None:
            click.echo(f"ERROR: Config file '{config_file}' not found.", err=True)
            sys.exit(1)
        config = load_config(config_path)
        defaults = config.get("defaults", {})

        if env_file:
            env = load_env(env_file)
        else:
            env = load_env(defaults.get("env_file"), base_dir=config.get("_config_dir") or ".")

        try:
            document = parse_file(file)
        except OSError as e:
            click.echo(f"ERROR: Cannot read '{file}': {e.strerror or e}", err=True)
            sys.exit(1)

        if show_list:
            _cmd_list(document)
            return

        variables = _parse_vars(var)

        request_config = build_request_config(
            defaults,
            env,
            timeout=timeout,
            insecure=True if insecure else None,
            proxy=proxy,
            dry_run=True if dry_run else None,
        )
        if max_depth is None:
            max_depth = parse_max_depth(defaults.get("max_depth", DEFAULT_MAX_DEPTH))
        verbose = verbose or parse_bool(defaults.get("verbose", False), "verbose")

        engine = Engine(document, config=request_config, max_depth=max_depth)
        context = engine.new_context(variables, env)
        result = engine.execute(request_name, context)
    except HtreqError as e:
        _echo_partial(context, verbose)
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(e.exit_code)

    click.echo(result.render(verbose=verbose))
    for warning in result.warnings:
        click.echo(f"WARNING: {warning}", err=True)


# ── Helpers ──────────────────────────────────────────────────────────────


def _setup_logging(debug):
    """Route htreq's loggers to the current stderr."""
    global _log_handler

    logger = logging.getLogger("htreq")
    if _log_handler is not None:
        logger.removeHandler(_log_handler)
    _log_handler = logging.StreamHandler(sys.stderr)
    _log_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logger.addHandler(_log_handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False


def _parse_vars(var_specs):
    """Parse -v key=value pairs into a dict."""
    variables = {}
    for v_str in var_specs:
        if "=" in v_str:
            k, val = v_str.split("=", 1)
            variables[k.strip()] = val.strip()
    return variables


def _cmd_list(document):
    if not document.requests:
        click.echo(f"No requests defined in {document.source}")
        return
    click.echo(f"Requests in {document.source}:\n")
    for name, req in document.requests.items():
        if req.is_script_only:
            click.echo(f"  {name:<20} (script)")
        else:
            click.echo(f"  {name:<20} {req.method} {req.url}")


def _echo_partial(context, verbose):
    """Print what a failed run already produced; it is not retracted."""
    from htreq.output import format_chained, format_verbose

    if context is None:
        return
    if verbose:
        for exchange in context.exchanges:
            click.echo(format_verbose(exchange))
            click.echo()
    elif context.root_output is not None and context.root_output.touched:
        click.echo(context.root_output.text)
    elif context.root_request is not None and context.root_request.is_script_only:
        text = format_chained(context.exchanges)
        if text:
            click.echo(text)
