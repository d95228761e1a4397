"""Tests for terse and verbose output rendering."""

from htreq.engine import Exchange, PreparedRequest
from htreq.hooks import HookResponse, Output
from htreq.output import format_terse, format_verbose


def _exchange(name="main", body="", output=None, request=True, response=True, **response_kwargs):
    prepared = PreparedRequest("GET", "http://x/ok", {"Accept": "*/*"}) if request else None
    resp = None
    if request and response:
        resp = HookResponse(response_kwargs.get("status_code", 200), response_kwargs.get("headers", {}), body)
    return Exchange(name, 1, output or Output(), request=prepared, response=resp, dry_run=request and not response)


class TestTerse:
    def test_body_only(self):
        assert format_terse(_exchange(body='{"ok":true}')) == '{"ok":true}'

    def test_append(self):
        out = Output()
        out.append("done")
        assert format_terse(_exchange(body='{"ok":true}', output=out)) == '{"ok":true}done'

    def test_write_replaces_body(self):
        out = Output()
        out.write("replaced")
        assert format_terse(_exchange(body="original", output=out)) == "replaced"

    def test_script_only_without_output(self):
        assert format_terse(_exchange(request=False)) == ""

    def test_dry_run(self):
        out = Output()
        out.append("x")
        assert format_terse(_exchange(response=False, output=out)) == "x"


class TestVerbose:
    def test_full_exchange(self):
        out = Output()
        out.append("done")
        exchange = _exchange(body='{"ok":true}', output=out, status_code=201, headers={"Content-Type": "application/json"})
        assert format_verbose(exchange) == (
            "=== REQUEST #main ===\n"
            "GET http://x/ok\n"
            "Accept: */*\n"
            "=== RESPONSE #main ===\n"
            "STATUS: 201\n"
            "Content-Type: application/json\n"
            "\n"
            '{"ok":true}\n'
            "=== OUTPUT #main ===\n"
            "done"
        )

    def test_request_body_shown(self):
        exchange = _exchange(body="pong")
        exchange.request.body = '{"a": 1}'
        text = format_verbose(exchange)
        assert "Accept: */*\n\n{\"a\": 1}\n=== RESPONSE #main ===" in text

    def test_no_output_section_when_untouched(self):
        assert "=== OUTPUT" not in format_verbose(_exchange(body="pong"))

    def test_dry_run_note(self):
        text = format_verbose(_exchange(response=False))
        assert text.endswith("=== RESPONSE #main ===\n(dry run: not sent)")

    def test_script_only(self):
        out = Output()
        out.write("45")
        text = format_verbose(_exchange(name="calc", request=False, output=out))
        assert text == "=== REQUEST #calc ===\n(script only: no request)\n=== OUTPUT #calc ===\n45"
