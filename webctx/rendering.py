"""Writing responses: status, headers, cookies and the body renderers."""

from __future__ import annotations

import base64
import enum
import http
import os
import posixpath
import stat
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from email.utils import formatdate
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import quote_plus, urlsplit
import json
import mimetypes

from .core import BaseContext, EngineSettings
from .inputs import MIME_JSON
from .messages import Cookie, Request, Response, SameSite

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
JSONP_CONTENT_TYPE = "application/javascript; charset=utf-8"
JSON_ASCII_CONTENT_TYPE = "application/json"
PLAIN_CONTENT_TYPE = "text/plain; charset=utf-8"
SSE_CONTENT_TYPE = "text/event-stream"

_HTML_ESCAPES = {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026"}
_LINE_SEPARATORS = {"\u2028": "\\u2028", "\u2029": "\\u2029"}


class RenderError(Exception):
    """A renderer could not produce its body; the context records it and aborts."""


class Renderer(Protocol):
    def render(self, writer: Response) -> None: ...

    def write_content_type(self, writer: Response) -> None: ...


def body_allowed_for_status(status: int) -> bool:
    """Return False for 1xx, 204 and 304 responses, which carry no body."""
    if 100 <= status <= 199:
        return False
    return status not in (http.HTTPStatus.NO_CONTENT, http.HTTPStatus.NOT_MODIFIED)


def escape_quotes(text: str) -> str:
    """Backslash-escape backslashes and double quotes."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _write_content_type(writer: Response, value: str) -> None:
    if not writer.headers.values("Content-Type"):
        writer.headers.set("Content-Type", value)


def _json_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, int) and not isinstance(key, bool):
        return str(key)
    raise TypeError(f"json: unsupported map key type: {type(key).__name__}")


def _prepare(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, bool, int, float)):
        return obj
    if isinstance(obj, enum.Enum):
        return _prepare(obj.value)
    if isinstance(obj, Mapping):
        items = sorted(((_json_key(k), _prepare(v)) for k, v in obj.items()), key=lambda kv: kv[0])
        return dict(items)
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _prepare(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_prepare(item) for item in obj]
    raise TypeError(f"json: unsupported type: {type(obj).__name__}")


def _dumps(data: Any, *, indent: bool = False, escape_html: bool = True) -> str:
    try:
        text = json.dumps(
            _prepare(data),
            ensure_ascii=False,
            allow_nan=False,
            indent=4 if indent else None,
            separators=(",", ": ") if indent else (",", ":"),
        )
    except (TypeError, ValueError) as exc:
        raise RenderError(str(exc)) from exc
    replacements = dict(_LINE_SEPARATORS)
    if escape_html:
        replacements.update(_HTML_ESCAPES)
    return "".join(replacements.get(ch, ch) for ch in text)


def _js_escape(text: str) -> str:
    special = {
        "\\": "\\\\",
        "'": "\\'",
        '"': '\\"',
        "<": "\\u003C",
        ">": "\\u003E",
        "&": "\\u0026",
        "=": "\\u003D",
    }
    out = []
    for ch in text:
        if ch in special:
            out.append(special[ch])
        elif ch < " " or (ord(ch) >= 128 and not ch.isprintable()):
            out.append(f"\\u{ord(ch):04X}")
        else:
            out.append(ch)
    return "".join(out)


@dataclass
class JSONRender:
    """JSON body in its plain, indented, secure, padded, ASCII-only and unescaped forms."""

    data: Any = None
    indent: bool = False
    escape_html: bool = True
    ascii_only: bool = False
    prefix: str = ""
    callback: str = ""
    trailing_newline: bool = False

    @property
    def content_type(self) -> str:
        if self.callback:
            return JSONP_CONTENT_TYPE
        if self.ascii_only:
            return JSON_ASCII_CONTENT_TYPE
        return JSON_CONTENT_TYPE

    def render(self, writer: Response) -> None:
        self.write_content_type(writer)
        text = _dumps(self.data, indent=self.indent, escape_html=self.escape_html)
        if self.ascii_only:
            text = "".join(ch if ord(ch) < 128 else f"\\u{ord(ch):04x}" for ch in text)
        if self.trailing_newline:
            text += "\n"
        if self.prefix and text.startswith("[") and text.endswith("]"):
            writer.write(self.prefix)
        if self.callback:
            writer.write(f"{_js_escape(self.callback)}({text});")
        else:
            writer.write(text)

    def write_content_type(self, writer: Response) -> None:
        _write_content_type(writer, self.content_type)


@dataclass
class StringRender:
    """A printf-style formatted plain-text body."""

    format: str
    args: tuple = ()

    def render(self, writer: Response) -> None:
        self.write_content_type(writer)
        writer.write(self.format % self.args if self.args else self.format)

    def write_content_type(self, writer: Response) -> None:
        _write_content_type(writer, PLAIN_CONTENT_TYPE)


@dataclass
class DataRender:
    """Raw bytes with a given content type."""

    content_type: str
    data: bytes = b""

    def render(self, writer: Response) -> None:
        self.write_content_type(writer)
        writer.write(self.data)

    def write_content_type(self, writer: Response) -> None:
        _write_content_type(writer, self.content_type)


@dataclass
class ReaderRender:
    """A body copied from a readable object, with a length and extra headers."""

    content_type: str
    content_length: int
    reader: Any
    headers: dict[str, str] | None = None

    def render(self, writer: Response) -> None:
        self.write_content_type(writer)
        headers = dict(self.headers or {})
        if self.content_length >= 0:
            headers["Content-Length"] = str(self.content_length)
        for key, value in headers.items():
            if writer.headers.get(key) == "":
                writer.headers.set(key, value)
        try:
            while chunk := self.reader.read(65536):
                writer.write(chunk)
        except OSError as exc:
            raise RenderError(str(exc)) from exc

    def write_content_type(self, writer: Response) -> None:
        _write_content_type(writer, self.content_type)


def _clean_path(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _hex_escape_non_ascii(text: str) -> str:
    return "".join(
        ch if ord(ch) < 128 else "".join(f"%{byte:x}" for byte in ch.encode("utf-8")) for ch in text
    )


def _html_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&#34;")
        .replace("'", "&#39;")
    )


@dataclass
class RedirectRender:
    """An HTTP redirect; only 201 and 300-308 are accepted."""

    code: int
    location: str
    request: Request | None = None

    def render(self, writer: Response) -> None:
        if (self.code < 300 or self.code > 308) and self.code != 201:
            raise ValueError(f"Cannot redirect with status code {self.code}")
        location = self.location
        method = self.request.method if self.request is not None else ""
        parts = urlsplit(location)
        if not parts.scheme and not parts.netloc:
            old_path = "/"
            if self.request is not None and self.request.url:
                old_path = urlsplit(self.request.url).path or "/"
            if not location.startswith("/"):
                location = old_path[: old_path.rfind("/") + 1] + location
            location, mark, query = location.partition("?")
            trailing = location.endswith("/")
            location = _clean_path(location)
            if trailing and not location.endswith("/"):
                location += "/"
            location += mark + query
        had_content_type = "Content-Type" in writer.headers
        writer.headers.set("Location", _hex_escape_non_ascii(location))
        if not had_content_type and method in ("GET", "HEAD"):
            writer.headers.set("Content-Type", "text/html; charset=utf-8")
        writer.write_header(self.code)
        if not had_content_type and method == "GET":
            phrase = http.HTTPStatus(self.code).phrase
            writer.write(f'<a href="{_html_escape(location)}">{phrase}</a>.\n\n')

    def write_content_type(self, writer: Response) -> None:
        return None


def _sse_field(text: str) -> str:
    return text.replace("\n", "\\n").replace("\r", "\\r")


def _sse_data(text: str) -> str:
    return text.replace("\n", "\ndata:").replace("\r", "\\r")


def _plain_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class SSEvent:
    """A Server-Sent Event."""

    event: str = ""
    data: Any = None
    id: str = ""
    retry: int = 0

    def render(self, writer: Response) -> None:
        self.write_content_type(writer)
        parts = []
        if self.id:
            parts.append(f"id:{_sse_field(self.id)}\n")
        if self.event:
            parts.append(f"event:{_sse_field(self.event)}\n")
        if self.retry > 0:
            parts.append(f"retry:{self.retry}\n")
        parts.append("data:")
        data = self.data
        if isinstance(data, (bytes, bytearray)):
            parts.append(_sse_data(bytes(data).decode("utf-8", "replace")) + "\n\n")
        elif isinstance(data, (Mapping, list, tuple)) or (
            is_dataclass(data) and not isinstance(data, type)
        ):
            parts.append(_dumps(data) + "\n\n")
        else:
            parts.append(_sse_data(_plain_value(data)) + "\n\n")
        writer.write("".join(parts))

    def write_content_type(self, writer: Response) -> None:
        writer.headers.set("Content-Type", SSE_CONTENT_TYPE)
        if "Cache-Control" not in writer.headers:
            writer.headers.set("Cache-Control", "no-cache")


@dataclass
class Negotiate:
    """Content-negotiation settings: the offered formats and the data to send.

    Only JSON is rendered; any other agreed format is refused with 406.
    """

    offered: list[str] = field(default_factory=list)
    data: Any = None
    json_data: Any = None


def _content_type_for(path: str, content: bytes) -> str:
    guessed, _ = mimetypes.guess_type(path)
    if guessed:
        if guessed.startswith("text/") and "charset" not in guessed:
            guessed += "; charset=utf-8"
        return guessed
    try:
        text = content[:512].decode("utf-8")
    except UnicodeDecodeError:
        return "application/octet-stream"
    if any(ch < " " and ch not in "\t\n\r\f" for ch in text):
        return "application/octet-stream"
    return PLAIN_CONTENT_TYPE


def _serve_error(writer: Response, code: int, message: str) -> None:
    writer.headers.delete("Content-Length")
    writer.headers.set("Content-Type", PLAIN_CONTENT_TYPE)
    writer.headers.set("X-Content-Type-Options", "nosniff")
    writer.write_header(code)
    writer.write(message + "\n")


def _serve_file(writer: Response, request: Request | None, path: str) -> None:
    try:
        info = os.stat(path)
        if not stat.S_ISREG(info.st_mode):
            raise FileNotFoundError(path)
        with open(path, "rb") as handle:
            content = handle.read()
    except FileNotFoundError:
        _serve_error(writer, 404, "404 page not found")
        return
    except PermissionError:
        _serve_error(writer, 403, "403 Forbidden")
        return
    except OSError:
        _serve_error(writer, 500, "500 Internal Server Error")
        return
    if not writer.headers.values("Content-Type"):
        writer.headers.set("Content-Type", _content_type_for(path, content))
    writer.headers.set("Last-Modified", formatdate(info.st_mtime, usegmt=True))
    writer.headers.set("Content-Length", str(len(content)))
    writer.write_header(200)
    if request is not None and request.method == "HEAD":
        writer.write_header_now()
    else:
        writer.write(content)


class RenderMixin:
    """Response-writing methods of a request context."""

    request: Request | None
    writer: Response
    engine: EngineSettings
    _same_site: SameSite

    def status(self, code: int) -> None:
        self.writer.write_header(code)

    def header(self, key: str, value: str) -> None:
        """Set a response header; an empty value removes it."""
        if value == "":
            self.writer.headers.delete(key)
        else:
            self.writer.headers.set(key, value)

    def set_same_site(self, same_site: SameSite) -> None:
        self._same_site = same_site

    def _add_cookie(self, cookie: Cookie) -> None:
        text = cookie.render()
        if text:
            self.writer.headers.add("Set-Cookie", text)

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int,
        path: str,
        domain: str,
        secure: bool,
        http_only: bool,
    ) -> None:
        """Add a Set-Cookie header with the value query-escaped."""
        self._add_cookie(
            Cookie(
                name=name,
                value=quote_plus(value, safe=""),
                max_age=max_age,
                path=path or "/",
                domain=domain,
                same_site=self._same_site,
                secure=secure,
                http_only=http_only,
            )
        )

    def set_cookie_data(self, cookie: Cookie) -> None:
        """Add a Set-Cookie header from a Cookie, filling in path and SameSite."""
        if not cookie.path:
            cookie.path = "/"
        if cookie.same_site == SameSite.DEFAULT:
            cookie.same_site = self._same_site
        self._add_cookie(cookie)

    def render(self, code: int, renderer: Renderer) -> None:
        """Write the status and let renderer produce the body; failures are recorded."""
        self.status(code)
        if not body_allowed_for_status(code):
            renderer.write_content_type(self.writer)
            self.writer.write_header_now()
            return
        try:
            renderer.render(self.writer)
        except RenderError as exc:
            self.error(exc)  # type: ignore[attr-defined]
            self.abort()  # type: ignore[attr-defined]

    def json(self, code: int, obj: Any) -> None:
        self.render(code, JSONRender(obj))

    def indented_json(self, code: int, obj: Any) -> None:
        self.render(code, JSONRender(obj, indent=True))

    def secure_json(self, code: int, obj: Any) -> None:
        """JSON with the engine's prefix in front of top-level arrays."""
        self.render(code, JSONRender(obj, prefix=self.engine.secure_json_prefix))

    def jsonp(self, code: int, obj: Any) -> None:
        """JSON wrapped in the callback named by the ``callback`` query value."""
        callback = self.default_query("callback", "")  # type: ignore[attr-defined]
        self.render(code, JSONRender(obj, callback=callback))

    def ascii_json(self, code: int, obj: Any) -> None:
        self.render(code, JSONRender(obj, ascii_only=True))

    def pure_json(self, code: int, obj: Any) -> None:
        """JSON without HTML escaping, ending with a newline."""
        self.render(code, JSONRender(obj, escape_html=False, trailing_newline=True))

    def abort_with_status_json(self, code: int, obj: Any) -> None:
        self.abort()  # type: ignore[attr-defined]
        self.json(code, obj)

    def string(self, code: int, format: str, *args: Any) -> None:
        self.render(code, StringRender(format, args))

    def data(self, code: int, content_type: str, data: bytes) -> None:
        self.render(code, DataRender(content_type, data))

    def data_from_reader(
        self,
        code: int,
        content_length: int,
        content_type: str,
        reader: Any,
        extra_headers: Mapping[str, str] | None,
    ) -> None:
        self.render(
            code,
            ReaderRender(content_type, content_length, reader, dict(extra_headers or {})),
        )

    def redirect(self, code: int, location: str) -> None:
        """Redirect; raises ValueError for a status that is not a redirect."""
        self.render(-1, RedirectRender(code, location, self.request))

    def file(self, path: str) -> None:
        """Serve a file from disk."""
        _serve_file(self.writer, self.request, path)

    def file_attachment(self, path: str, filename: str) -> None:
        """Serve a file as a download under the given name."""
        if filename.isascii():
            disposition = f'attachment; filename="{escape_quotes(filename)}"'
        else:
            disposition = "attachment; filename*=UTF-8''" + quote_plus(filename, safe="")
        self.writer.headers.set("Content-Disposition", disposition)
        _serve_file(self.writer, self.request, path)

    def sse_event(self, name: str, message: Any) -> None:
        self.render(-1, SSEvent(event=name, data=message))

    def stream(self, step: Callable[[Response], bool]) -> bool:
        """Call step until it returns False; return True if the client went away first."""
        writer = self.writer
        while True:
            if writer.client_closed:
                return True
            keep_open = step(writer)
            writer.flush()
            if not keep_open:
                return False

    def negotiate(self, code: int, config: Negotiate) -> None:
        """Render config's data in the agreed format, or abort with 406."""
        agreed = self.negotiate_format(*config.offered)  # type: ignore[attr-defined]
        if agreed == MIME_JSON:
            self.json(code, config.json_data if config.json_data is not None else config.data)
            return
        self.abort_with_error(  # type: ignore[attr-defined]
            406, ValueError("the accepted formats are not offered by the server")
        )


__all__ = [
    "BaseContext",
    "DataRender",
    "JSONRender",
    "Negotiate",
    "ReaderRender",
    "RedirectRender",
    "RenderError",
    "RenderMixin",
    "SSEvent",
    "StringRender",
    "body_allowed_for_status",
    "escape_quotes",
]