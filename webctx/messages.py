"""HTTP request and response primitives used by the request context."""

from __future__ import annotations

import copy
import enum
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import Message
from email.utils import collapse_rfc2231_value, format_datetime
from typing import Any, Iterator, Mapping
from urllib.parse import parse_qs, urlsplit

from . import debug

_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
)
_FORM_URLENCODED = "application/x-www-form-urlencoded"
_MULTIPART_FORM = "multipart/form-data"


def _is_token(text: str) -> bool:
    return bool(text) and all(ch in _TOKEN_CHARS for ch in text)


def _canonical_key(key: str) -> str:
    if not _is_token(key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


class Headers:
    """Case-insensitive, multi-valued HTTP header collection."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._items: dict[str, list[str]] = {}
        for key, value in (initial or {}).items():
            for item in [value] if isinstance(value, str) else value:
                self.add(key, item)

    def get(self, key: str) -> str:
        """Return the first value for key, or an empty string."""
        found = self._items.get(_canonical_key(key))
        return found[0] if found else ""

    def set(self, key: str, value: str) -> None:
        self._items[_canonical_key(key)] = [value]

    def add(self, key: str, value: str) -> None:
        self._items.setdefault(_canonical_key(key), []).append(value)

    def delete(self, key: str) -> None:
        self._items.pop(_canonical_key(key), None)

    def values(self, key: str) -> list[str]:
        """Return every value for key."""
        return list(self._items.get(_canonical_key(key), ()))

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _canonical_key(key) in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Headers) and self._items == other._items

    def __copy__(self) -> Headers:
        clone = Headers()
        clone._items = {key: list(values) for key, values in self._items.items()}
        return clone

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


class SameSite(enum.Enum):
    """The SameSite cookie attribute."""

    UNSET = 0
    DEFAULT = 1
    LAX = 2
    STRICT = 3
    NONE = 4


_SAME_SITE_TEXT = {SameSite.LAX: "Lax", SameSite.STRICT: "Strict", SameSite.NONE: "None"}


def _sanitize_cookie_value(value: str) -> str:
    kept = "".join(ch for ch in value if " " <= ch < "\x7f" and ch not in '";\\')
    if " " in kept or "," in kept:
        return f'"{kept}"'
    return kept


def _sanitize_cookie_path(path: str) -> str:
    return "".join(ch for ch in path if " " <= ch < "\x7f" and ch != ";")


@dataclass
class Cookie:
    """An HTTP cookie as sent in a Set-Cookie header."""

    name: str
    value: str = ""
    path: str = ""
    domain: str = ""
    expires: datetime | None = None
    max_age: int = 0
    secure: bool = False
    http_only: bool = False
    same_site: SameSite = SameSite.UNSET
    partitioned: bool = False

    def render(self) -> str:
        """Serialise for a Set-Cookie header; an invalid name yields an empty string."""
        if not _is_token(self.name):
            return ""
        parts = [f"{self.name}={_sanitize_cookie_value(self.value)}"]
        if self.path:
            parts.append(f"Path={_sanitize_cookie_path(self.path)}")
        if self.domain:
            parts.append(f"Domain={self.domain.removeprefix('.')}")
        if self.expires is not None:
            moment = self.expires
            moment = (
                moment.replace(tzinfo=timezone.utc)
                if moment.tzinfo is None
                else moment.astimezone(timezone.utc)
            )
            if moment.year >= 1601:
                parts.append(f"Expires={format_datetime(moment, usegmt=True)}")
        if self.max_age > 0:
            parts.append(f"Max-Age={self.max_age}")
        elif self.max_age < 0:
            parts.append("Max-Age=0")
        if self.http_only:
            parts.append("HttpOnly")
        if self.secure:
            parts.append("Secure")
        if self.same_site in _SAME_SITE_TEXT:
            parts.append(f"SameSite={_SAME_SITE_TEXT[self.same_site]}")
        if self.partitioned:
            parts.append("Partitioned")
        return "; ".join(parts)


@dataclass
class UploadedFile:
    """A file part of a multipart form; content is None when nothing can be read."""

    filename: str
    content: bytes | None = None
    content_type: str = ""
    headers: Headers = field(default_factory=Headers)


def _header_param(message: Message, header: str, name: str) -> str | None:
    value = message.get_param(name, header=header)
    if value is None or value is True:
        return None
    return collapse_rfc2231_value(value)


def _parse_part_headers(block: bytes) -> Headers:
    headers = Headers()
    for line in block.decode("utf-8", "replace").splitlines():
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise ValueError(f"malformed MIME header line: {line}")
        headers.add(key.strip(), value.strip())
    return headers


def _parse_multipart(
    body: bytes, boundary: str
) -> tuple[dict[str, list[str]], dict[str, list[UploadedFile]]]:
    delimiter = b"--" + boundary.encode("latin-1")
    segments = body.split(delimiter)
    if len(segments) < 2:
        raise ValueError("multipart: NextPart: EOF")
    form: dict[str, list[str]] = {}
    files: dict[str, list[UploadedFile]] = {}
    for segment in segments[1:]:
        if segment.startswith(b"--"):
            return form, files
        padding, newline, part = segment.partition(b"\n")
        if not newline or padding.strip():
            raise ValueError("multipart: malformed boundary line")
        if part.endswith(b"\r\n"):
            part = part[:-2]
        elif part.endswith(b"\n"):
            part = part[:-1]
        if part.startswith(b"\r\n"):
            header_block, content = b"", part[2:]
        else:
            index = part.find(b"\r\n\r\n")
            if index >= 0:
                header_block, content = part[:index], part[index + 4:]
            else:
                index = part.find(b"\n\n")
                if index < 0:
                    raise ValueError("multipart: malformed MIME header")
                header_block, content = part[:index], part[index + 2:]
        headers = _parse_part_headers(header_block)
        disposition = Message()
        disposition["Content-Disposition"] = headers.get("Content-Disposition")
        if disposition.get_content_disposition() != "form-data":
            continue
        name = _header_param(disposition, "content-disposition", "name")
        if not name:
            continue
        filename = _header_param(disposition, "content-disposition", "filename")
        if filename:
            upload = UploadedFile(
                filename=filename.replace("\\", "/").rsplit("/", 1)[-1],
                content=content,
                content_type=headers.get("Content-Type"),
                headers=headers,
            )
            files.setdefault(name, []).append(upload)
        else:
            form.setdefault(name, []).append(content.decode("utf-8", "replace"))
    raise ValueError("multipart: unexpected end of body")


@dataclass(eq=False)
class Request:
    """An incoming HTTP request; the body is consumed when read."""

    method: str = "GET"
    url: str | None = "/"
    headers: Headers = field(default_factory=Headers)
    body: Any = None
    remote_addr: str = ""
    context: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if isinstance(self.body, (bytes, bytearray)):
            self.body = io.BytesIO(bytes(self.body))
        self._parsed = False
        self._form: dict[str, list[str]] = {}
        self._files: dict[str, list[UploadedFile]] | None = None
        self._body_error: ValueError | None = None

    def query_values(self) -> dict[str, list[str]]:
        """Parse the URL query string, keeping blank values."""
        if self.url is None:
            return {}
        return parse_qs(urlsplit(self.url).query, keep_blank_values=True)

    def read_body(self) -> bytes:
        """Read what remains of the body."""
        if self.body is None:
            return b""
        return self.body.read()

    def cookie(self, name: str) -> Cookie:
        """Return the named request cookie, raising KeyError when absent."""
        for header in self.headers.values("Cookie"):
            for piece in header.split(";"):
                key, _, value = piece.strip().partition("=")
                if key != name:
                    continue
                if len(value) > 1 and value[0] == value[-1] == '"':
                    value = value[1:-1]
                return Cookie(name=key, value=value)
        raise KeyError(f"named cookie not present: {name}")

    def _media_type(self) -> tuple[str, str | None]:
        raw = self.headers.get("Content-Type")
        if not raw:
            return "", None
        message = Message()
        message["Content-Type"] = raw
        return message.get_content_type(), message.get_boundary()

    def _load_body(self) -> None:
        if self._parsed:
            if self._body_error is not None:
                raise self._body_error
            return
        self._parsed = True
        media_type, boundary = self._media_type()
        try:
            if media_type == _MULTIPART_FORM:
                if not boundary:
                    raise ValueError("no multipart boundary param in Content-Type")
                self._files = {}
                self._form, self._files = _parse_multipart(self.read_body(), boundary)
            elif media_type == _FORM_URLENCODED and self.method in ("POST", "PUT", "PATCH"):
                text = self.read_body().decode("utf-8", "replace")
                self._form = parse_qs(text, keep_blank_values=True)
        except ValueError as exc:
            self._body_error = exc
            raise

    def parse_form(self) -> dict[str, list[str]]:
        """Return the form values from an urlencoded or multipart body."""
        self._load_body()
        return {key: list(values) for key, values in self._form.items()}

    def files(self) -> dict[str, list[UploadedFile]]:
        """Return the uploaded files of a multipart body."""
        media_type, _ = self._media_type()
        if media_type != _MULTIPART_FORM:
            raise ValueError("request Content-Type isn't multipart/form-data")
        self._load_body()
        return {key: list(values) for key, values in (self._files or {}).items()}


@dataclass(eq=False)
class Response:
    """A buffered response: headers may change until the response is committed."""

    status: int = 200
    headers: Headers = field(default_factory=Headers)
    body: bytearray = field(default_factory=bytearray)
    committed: bool = False
    sent_headers: Headers | None = None
    client_closed: bool = False

    def write_header(self, code: int) -> None:
        """Set the status code unless the headers were already sent."""
        if code > 0 and self.status != code:
            if self.committed:
                debug.debug_print(
                    "[WARNING] Headers were already written. Wanted to override status code %d with %d",
                    self.status,
                    code,
                )
                return
            self.status = code

    def write_header_now(self) -> None:
        """Commit the status and a snapshot of the headers."""
        if not self.committed:
            self.committed = True
            self.sent_headers = copy.copy(self.headers)

    def write(self, data: bytes | str) -> int:
        """Append to the body, committing the headers first."""
        self.write_header_now()
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.body.extend(data)
        return len(data)

    def flush(self) -> None:
        self.write_header_now()

    def close_client(self) -> None:
        """Mark the client as gone."""
        self.client_closed = True