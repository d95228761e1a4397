"""Tests for request file parsing."""

import pytest

from htreq.errors import ParseError
from htreq.parser import parse, parse_file

FULL = """\
# Demo file
@baseUrl = http://localhost:8000
@token = {{>>cat token.txt}}
@cfg.timeout = 5

### #login
@user = admin
@cfg.insecure = true
POST {{baseUrl}}/login
Content-Type: application/json
X-Trace: abc
debug=1
redirect=http://example.com/next

{"user": "{{user}}",
 "nested": {"a": 1}}

<?
#pre
api.set('started', True)
#post
api.set('token', response.json()['token'])
?>

### #main
<?
	for i in range(3):
		api.send('login')
?>
"""


# ── Globals and config ───────────────────────────────────────────────────


class TestGlobals:
    def test_globals_in_order(self):
        doc = parse(FULL)
        assert list(doc.variables) == ["baseUrl", "token"]
        assert doc.variables["baseUrl"] == "http://localhost:8000"

    def test_globals_kept_raw(self):
        """Declarations store the raw expression, nothing is resolved."""
        doc = parse(FULL)
        assert doc.variables["token"] == "{{>>cat token.txt}}"

    def test_document_config(self):
        doc = parse(FULL)
        assert doc.config == {"timeout": "5"}

    def test_forward_reference_is_legal(self):
        doc = parse("@url = {{host}}/api\n@host = http://x\n")
        assert doc.variables == {"url": "{{host}}/api", "host": "http://x"}

    def test_value_keeps_inner_equals(self):
        doc = parse("@q = a=b&c=d\n")
        assert doc.variables["q"] == "a=b&c=d"

    def test_unknown_config_key(self):
        with pytest.raises(ParseError, match="Unknown config key 'retries'"):
            parse("@cfg.retries = 3\n")

    def test_dry_run_key_spellings(self):
        doc = parse("@cfg.dry-run = true\n### #a\n@cfg.dry_run = false\nGET http://x\n")
        assert doc.config == {"dry_run": "true"}
        assert doc.requests["a"].config == {"dry_run": "false"}

    def test_garbage_before_first_block(self):
        with pytest.raises(ParseError) as exc:
            parse("@a = 1\nGET http://x\n")
        assert exc.value.line_no == 2
        assert "GET http://x" in str(exc.value)


# ── Request blocks ───────────────────────────────────────────────────────


class TestRequestBlock:
    def test_request_order(self):
        doc = parse(FULL)
        assert list(doc.requests) == ["login", "main"]

    def test_method_and_url(self):
        req = parse(FULL).requests["login"]
        assert req.method == "POST"
        assert req.url == "{{baseUrl}}/login"
        assert not req.is_script_only

    def test_locals_and_block_config(self):
        req = parse(FULL).requests["login"]
        assert req.variables == {"user": "admin"}
        assert req.config == {"insecure": "true"}

    def test_headers(self):
        req = parse(FULL).requests["login"]
        assert req.headers == {"Content-Type": "application/json", "X-Trace": "abc"}

    def test_query_params_with_colon_in_value(self):
        """key=value with a colon in the value is still a query parameter."""
        req = parse(FULL).requests["login"]
        assert req.query == {"debug": "1", "redirect": "http://example.com/next"}

    def test_body_verbatim(self):
        req = parse(FULL).requests["login"]
        assert req.body == '{"user": "{{user}}",\n "nested": {"a": 1}}'

    def test_http_version_suffix(self):
        req = parse("### #a\nGET http://x/y HTTP/1.1\n").requests["a"]
        assert (req.method, req.url) == ("GET", "http://x/y")

    def test_url_with_spaced_placeholders(self):
        """Command arguments and padded references keep the request line intact."""
        req = parse("### #a\nGET http://x/ts?t={{>>date +%s}}&u={{ user }}\n").requests["a"]
        assert (req.method, req.url) == ("GET", "http://x/ts?t={{>>date +%s}}&u={{ user }}")

    def test_spaced_placeholder_with_http_version(self):
        req = parse("### #a\nGET {{ baseUrl }}/ping HTTP/1.1\n").requests["a"]
        assert req.url == "{{ baseUrl }}/ping"

    def test_header_shaped_body_line(self):
        """Anything after the blank line is body, even 'Name: value' lines."""
        req = parse("### #a\nPOST http://x\nAccept: */*\n\nKey: value\nother\n").requests["a"]
        assert req.headers == {"Accept": "*/*"}
        assert req.body == "Key: value\nother"

    def test_body_runs_until_next_block(self):
        doc = parse("### #a\nPOST http://x\n\nline1\n\nline2\n\n\n### #b\nGET http://y\n")
        assert doc.requests["a"].body == "line1\n\nline2"
        assert doc.requests["b"].url == "http://y"

    def test_comments_in_header_section(self):
        req = parse("### #a\n# note\nGET http://x\n# another\nAccept: */*\n").requests["a"]
        assert req.headers == {"Accept": "*/*"}

    def test_hash_lines_in_body_are_kept(self):
        req = parse("### #a\nPOST http://x\n\n# not a comment\n").requests["a"]
        assert req.body == "# not a comment"

    def test_duplicate_name(self):
        with pytest.raises(ParseError, match="Duplicate request name 'a'"):
            parse("### #a\nGET http://x\n### #a\nGET http://y\n")

    def test_bad_request_line(self):
        with pytest.raises(ParseError, match="request line") as exc:
            parse("### #a\nfetch http://x\n")
        assert exc.value.line_no == 2

    def test_bad_header_line(self):
        with pytest.raises(ParseError) as exc:
            parse("### #a\nGET http://x\nnot a header\n")
        assert exc.value.line_no == 3

    def test_empty_block_is_script_only(self):
        req = parse("### #a\n\n").requests["a"]
        assert req.is_script_only
        assert req.post_script == ""


# ── Hook blocks ──────────────────────────────────────────────────────────


class TestHookBlocks:
    def test_pre_and_post_sections(self):
        req = parse(FULL).requests["login"]
        assert req.pre_script == "api.set('started', True)"
        assert req.post_script == "api.set('token', response.json()['token'])"

    def test_no_marker_means_post_only(self):
        req = parse(FULL).requests["main"]
        assert req.pre_script == ""
        assert req.post_script == "for i in range(3):\n\tapi.send('login')"

    def test_script_only_request(self):
        req = parse(FULL).requests["main"]
        assert req.is_script_only
        assert req.method is None and req.url is None

    def test_hook_keyword_opener(self):
        req = parse("### #a\n<?hook\noutput.write('x')\n?>\n").requests["a"]
        assert req.post_script == "output.write('x')"

    def test_hook_after_headers_without_blank(self):
        req = parse("### #a\nGET http://x\nAccept: */*\n<?\noutput.write('x')\n?>\n").requests["a"]
        assert req.headers == {"Accept": "*/*"}
        assert req.body == ""
        assert req.post_script == "output.write('x')"

    def test_body_stops_at_hook(self):
        req = parse("### #a\nPOST http://x\n\n{\"a\": 1}\n\n<?\noutput.append('!')\n?>\n").requests["a"]
        assert req.body == '{"a": 1}'

    def test_unterminated_hook(self):
        with pytest.raises(ParseError, match="Unterminated") as exc:
            parse("### #a\nGET http://x\n\n<?\noutput.write('x')\n")
        assert exc.value.line_no == 4

    def test_text_after_hook(self):
        with pytest.raises(ParseError, match="after hook block"):
            parse("### #a\n<?\npass\n?>\nGET http://x\n")

    def test_multiple_hook_blocks_concatenate(self):
        text = "### #a\nGET http://x\n\n<?\n#pre\na = 1\n?>\n<?\n#pre\nb = 2\n#post\nc = 3\n?>\n"
        req = parse(text).requests["a"]
        assert req.pre_script == "a = 1\nb = 2"
        assert req.post_script == "c = 3"

    def test_xml_declaration_is_body(self):
        req = parse('### #a\nPOST http://x\n\n<?xml version="1.0"?>\n<a/>\n').requests["a"]
        assert req.body == '<?xml version="1.0"?>\n<a/>'
        assert req.post_script == ""


class TestParseFile:
    def test_reads_utf8(self, tmp_path):
        path = tmp_path / "api.http"
        path.write_text("@greeting = héllo\n### #a\nGET http://x\n", encoding="utf-8")
        doc = parse_file(path)
        assert doc.variables["greeting"] == "héllo"
        assert doc.source == str(path)

    def test_error_names_source(self, tmp_path):
        path = tmp_path / "bad.http"
        path.write_text("nonsense\n")
        with pytest.raises(ParseError) as exc:
            parse_file(path)
        assert str(path) in str(exc.value)
