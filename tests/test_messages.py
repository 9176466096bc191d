from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import pytest

from webctx.messages import Cookie, Headers, Request, Response, SameSite, UploadedFile

BOUNDARY = "testboundary"


def _multipart_body(fields=(), files=()):
    chunks = []
    for name, value in fields:
        chunks.append(f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n')
    for name, filename, content in files:
        chunks.append(
            f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
            f"Content-Type: application/octet-stream\r\n\r\n{content}\r\n"
        )
    chunks.append(f"--{BOUNDARY}--\r\n")
    return "".join(chunks).encode()


def _multipart_request(body):
    return Request(
        method="POST",
        url="/",
        headers={"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"},
        body=body,
    )


def test_headers_case_insensitive():
    headers = Headers()
    headers.set("x-custom", "value")
    assert headers.get("X-CUSTOM") == "value"
    assert "X-Custom" in headers
    assert list(headers) == ["X-Custom"]


def test_headers_add_values_delete():
    headers = Headers()
    headers.add("Accept", "a")
    headers.add("accept", "b")
    assert headers.values("ACCEPT") == ["a", "b"]
    assert headers.get("Accept") == "a"
    headers.delete("accept")
    assert headers.get("Accept") == ""
    assert "Accept" not in headers
    assert len(headers) == 0


def test_headers_set_replaces_all_values():
    headers = Headers({"Vary": ["one", "two"]})
    headers.set("Vary", "three")
    assert headers.values("Vary") == ["three"]


def test_headers_non_token_key_kept_verbatim():
    headers = Headers()
    headers.set("bad key", "v")
    assert list(headers) == ["bad key"]
    assert headers.get("bad key") == "v"


def test_cookie_render_matches_set_cookie_format():
    cookie = Cookie(
        name="user",
        value="gin",
        max_age=1,
        path="/",
        domain="localhost",
        secure=True,
        http_only=True,
        same_site=SameSite.LAX,
    )
    assert cookie.render() == "user=gin; Path=/; Domain=localhost; Max-Age=1; HttpOnly; Secure; SameSite=Lax"


def test_cookie_negative_max_age():
    assert "Max-Age=0" in Cookie(name="user", value="gin", max_age=-1).render()


def test_cookie_invalid_name_dropped():
    assert Cookie(name="bad name", value="x").render() == ""


def test_cookie_value_with_space_is_quoted():
    assert Cookie(name="a", value="b c").render() == 'a="b c"'


@pytest.mark.parametrize(("mode", "text"), [(SameSite.STRICT, "SameSite=Strict"), (SameSite.NONE, "SameSite=None")])
def test_cookie_same_site_attributes(mode, text):
    assert text in Cookie(name="user", value="gin", same_site=mode).render()


def test_cookie_default_same_site_omitted():
    assert "SameSite" not in Cookie(name="user", value="gin", same_site=SameSite.DEFAULT).render()


def test_cookie_expires_round_trip():
    moment = datetime(2030, 5, 17, 8, 30, 0, tzinfo=timezone.utc)
    rendered = Cookie(name="user", value="gin", expires=moment).render()
    expires = next(part for part in rendered.split("; ") if part.startswith("Expires="))
    assert parsedate_to_datetime(expires.removeprefix("Expires=")) == moment


def test_request_query_values():
    request = Request(url="http://example.com/?foo=bar&page=10&id=")
    assert request.query_values() == {"foo": ["bar"], "page": ["10"], "id": [""]}


def test_request_query_values_without_url():
    assert Request(url=None).query_values() == {}


def test_read_body_consumes_stream():
    request = Request(method="POST", body="Fetch binary post data")
    assert request.read_body() == b"Fetch binary post data"
    assert request.read_body() == b""


def test_request_cookie_lookup():
    request = Request(headers={"Cookie": "user=gin"})
    assert request.cookie("user").value == "gin"
    with pytest.raises(KeyError):
        request.cookie("nokey")


def test_parse_form_urlencoded():
    request = Request(
        method="POST",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        body="foo=bar&page=11&both=&foo=second",
    )
    form = request.parse_form()
    assert form["foo"] == ["bar", "second"]
    assert form["page"] == ["11"]
    assert form["both"] == [""]


def test_parse_form_ignores_body_for_get():
    request = Request(
        method="GET",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        body="foo=bar",
    )
    assert request.parse_form() == {}


def test_files_requires_multipart():
    request = Request(method="POST", headers={"Content-Type": "application/json"}, body="{}")
    with pytest.raises(ValueError):
        request.files()


def test_multipart_fields_and_files():
    body = _multipart_body(
        fields=[("foo", "bar"), ("array", "first"), ("array", "second"), ("names[a]", "thinkerou")],
        files=[("file", "test", "test")],
    )
    request = _multipart_request(body)
    form = request.parse_form()
    assert form["foo"] == ["bar"]
    assert form["array"] == ["first", "second"]
    assert form["names[a]"] == ["thinkerou"]
    uploads = request.files()["file"]
    assert len(uploads) == 1
    assert isinstance(uploads[0], UploadedFile)
    assert uploads[0].filename == "test"
    assert uploads[0].content == b"test"
    assert uploads[0].content_type == "application/octet-stream"


def test_multipart_only_closing_boundary():
    request = _multipart_request(_multipart_body())
    assert request.files() == {}
    assert request.parse_form() == {}


def test_multipart_empty_body_fails_every_time():
    request = _multipart_request(b"")
    with pytest.raises(ValueError):
        request.files()
    with pytest.raises(ValueError):
        request.parse_form()


def test_response_status_locked_after_commit():
    response = Response()
    response.write_header(201)
    assert response.write(b"hello") == 5
    assert response.committed is True
    response.write_header(500)
    assert response.status == 201
    assert bytes(response.body) == b"hello"


def test_response_sent_headers_snapshot():
    response = Response()
    response.headers.set("X-Test", "original")
    response.write_header_now()
    response.headers.set("X-Test", "overridden")
    assert response.sent_headers.get("X-Test") == "original"
    assert response.headers.get("X-Test") == "overridden"


def test_response_flush_commits_and_client_close():
    response = Response()
    assert response.write("test") == len("test")
    response.flush()
    assert response.committed is True
    assert response.client_closed is False
    response.close_client()
    assert response.client_closed is True