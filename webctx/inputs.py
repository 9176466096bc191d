"""Reading request input: query strings, forms, uploads, headers, client address and negotiation."""

from __future__ import annotations

import ipaddress
import logging
import os
import re
from typing import Any

from . import debug
from .core import EngineSettings
from .messages import Request, UploadedFile

MIME_JSON = "application/json"
MIME_HTML = "text/html"
MIME_XML = "application/xml"
MIME_XML2 = "text/xml"
MIME_PLAIN = "text/plain"
MIME_POST_FORM = "application/x-www-form-urlencoded"
MIME_MULTIPART_POST_FORM = "multipart/form-data"
MIME_YAML = "application/x-yaml"
MIME_YAML2 = "application/yaml"
MIME_TOML = "application/toml"

_log = logging.getLogger(__name__)
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def parse_accept(header: str) -> list[str]:
    """Split an Accept header into media ranges, dropping parameters and blanks."""
    accepted = []
    for part in header.split(","):
        cut = part.find(";")
        if cut > 0:
            part = part[:cut]
        part = part.strip()
        if part:
            accepted.append(part)
    return accepted


def filter_flags(content: str) -> str:
    """Return content up to the first space or semicolon."""
    for position, char in enumerate(content):
        if char in " ;":
            return content[:position]
    return content


def _parse_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if not text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _host_of(address: str) -> str | None:
    """Return the host part of host:port, or None when the address is malformed."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1:end + 2] != ":":
            return None
        if "[" in address[1:] or "]" in address[end + 1:]:
            return None
        return address[1:end]
    colon = address.rfind(":")
    if colon < 0:
        return None
    host = address[:colon]
    if ":" in host or "[" in host or "]" in host:
        return None
    return host


def _bracket_map(values: dict[str, list[str]], key: str) -> tuple[dict[str, str], bool]:
    found: dict[str, str] = {}
    exists = False
    for name, items in values.items():
        opening = name.find("[")
        if opening >= 1 and name[:opening] == key:
            rest = name[opening + 1:]
            closing = rest.find("]")
            if closing >= 1:
                exists = True
                found[rest[:closing]] = items[0]
    return found, exists


class InputMixin:
    """Accessors for everything a handler reads from the incoming request."""

    request: Request | None
    engine: EngineSettings
    accepted: list[str] | None
    _query_cache: dict[str, list[str]] | None
    _form_cache: dict[str, list[str]] | None

    # Query string

    def _init_query_cache(self) -> dict[str, list[str]]:
        if self._query_cache is None:
            if self.request is not None and self.request.url is not None:
                self._query_cache = self.request.query_values()
            else:
                self._query_cache = {}
        return self._query_cache

    def get_query_array(self, key: str) -> tuple[list[str], bool]:
        """Return (values, True) when the query has key, else ([], False)."""
        cache = self._init_query_cache()
        if key in cache:
            return cache[key], True
        return [], False

    def query_array(self, key: str) -> list[str]:
        return self.get_query_array(key)[0]

    def get_query(self, key: str) -> tuple[str, bool]:
        """Return (first value, True) when present, even if empty, else ("", False)."""
        values, ok = self.get_query_array(key)
        if ok:
            return values[0], True
        return "", False

    def query(self, key: str) -> str:
        return self.get_query(key)[0]

    def default_query(self, key: str, default: str) -> str:
        value, ok = self.get_query(key)
        return value if ok else default

    def get_query_map(self, key: str) -> tuple[dict[str, str], bool]:
        """Collect key[sub]=value query entries into {sub: value}."""
        return _bracket_map(self._init_query_cache(), key)

    def query_map(self, key: str) -> dict[str, str]:
        return self.get_query_map(key)[0]

    # Form body

    def _init_form_cache(self) -> dict[str, list[str]]:
        if self._form_cache is None:
            self._form_cache = {}
            if self.request is not None:
                try:
                    self._form_cache = self.request.parse_form()
                except ValueError as exc:
                    debug.debug_print("error on parse multipart form array: %s", exc)
        return self._form_cache

    def get_post_form_array(self, key: str) -> tuple[list[str], bool]:
        """Return (values, True) when the form body has key, else ([], False)."""
        cache = self._init_form_cache()
        if key in cache:
            return cache[key], True
        return [], False

    def post_form_array(self, key: str) -> list[str]:
        return self.get_post_form_array(key)[0]

    def get_post_form(self, key: str) -> tuple[str, bool]:
        values, ok = self.get_post_form_array(key)
        if ok:
            return values[0], True
        return "", False

    def post_form(self, key: str) -> str:
        return self.get_post_form(key)[0]

    def default_post_form(self, key: str, default: str) -> str:
        value, ok = self.get_post_form(key)
        return value if ok else default

    def get_post_form_map(self, key: str) -> tuple[dict[str, str], bool]:
        return _bracket_map(self._init_form_cache(), key)

    def post_form_map(self, key: str) -> dict[str, str]:
        return self.get_post_form_map(key)[0]

    # Uploads

    def form_file(self, name: str) -> UploadedFile:
        """Return the first uploaded file for name; raises ValueError or KeyError."""
        files = self._require_request().files()
        if not files.get(name):
            raise KeyError("http: no such file")
        return files[name][0]

    def multipart_form(self) -> tuple[dict[str, list[str]], dict[str, list[UploadedFile]]]:
        """Return the (values, files) of a multipart body."""
        request = self._require_request()
        files = request.files()
        return request.parse_form(), files

    def save_uploaded_file(self, file: UploadedFile, dst: str | os.PathLike, mode: int = 0o750) -> None:
        """Write an uploaded file to dst, creating its directory with the given mode."""
        if file.content is None:
            raise OSError(f"cannot open uploaded file {file.filename!r}")
        directory = os.path.dirname(os.fspath(dst)) or "."
        os.makedirs(directory, mode, exist_ok=True)
        os.chmod(directory, mode)
        with open(dst, "wb") as out:
            out.write(file.content)

    # Client address and headers

    def _require_request(self) -> Request:
        if self.request is None:
            raise ValueError("context has no request")
        return self.request

    def _request_header(self, key: str) -> str:
        if self.request is None:
            return ""
        return self.request.headers.get(key)

    def client_ip(self) -> str:
        """Best-effort client address, honouring trusted platforms and proxies."""
        engine = self.engine
        if engine.trusted_platform:
            address = self._request_header(engine.trusted_platform)
            if address:
                return address
        if engine.app_engine:
            _log.warning(
                "The app_engine flag is going to be deprecated; "
                "use trusted_platform = PLATFORM_GOOGLE_APP_ENGINE instead."
            )
            address = self._request_header("X-Appengine-Remote-Addr")
            if address:
                return address
        remote = _parse_ip(self.remote_ip())
        if remote is None:
            return ""
        trusted = engine.is_trusted_proxy(remote)
        if trusted and engine.forwarded_by_client_ip and engine.remote_ip_headers is not None:
            for header_name in engine.remote_ip_headers:
                address = engine.validate_header(self._request_header(header_name))
                if address is not None:
                    return address
        return str(remote)

    def remote_ip(self) -> str:
        """Return the host part of the request's remote address, or an empty string."""
        if self.request is None:
            return ""
        host = _host_of(self.request.remote_addr.strip())
        return host if host is not None else ""

    def content_type(self) -> str:
        return filter_flags(self._request_header("Content-Type"))

    def is_websocket(self) -> bool:
        """Return True when the request asks for a websocket upgrade."""
        return (
            "upgrade" in self._request_header("Connection").lower()
            and self._request_header("Upgrade").casefold() == "websocket"
        )

    def get_header(self, key: str) -> str:
        return self._request_header(key)

    def get_raw_data(self) -> bytes:
        """Read the remaining request body."""
        request = self._require_request()
        if request.body is None:
            raise ValueError("cannot read nil body")
        return request.read_body()

    def cookie(self, name: str) -> str:
        """Return the unescaped value of a request cookie; KeyError when absent."""
        value = self._require_request().cookie(name).value
        if _BAD_ESCAPE.search(value):
            return ""
        return re.sub(
            r"%([0-9A-Fa-f]{2})",
            lambda m: chr(int(m.group(1), 16)),
            value.replace("+", " "),
        ).encode("latin-1").decode("utf-8", "replace")

    # Content negotiation

    def negotiate_format(self, *offered: str) -> str:
        """Return the first offer that matches the accepted formats, or an empty string."""
        if not offered:
            raise ValueError("you must provide at least one offer")
        if self.accepted is None:
            self.accepted = parse_accept(self._request_header("Accept"))
        if not self.accepted:
            return offered[0]
        for accepted in self.accepted:
            for offer in offered:
                matched = 0
                for accepted_char, offer_char in zip(accepted, offer):
                    if accepted_char == "*" or offer_char == "*":
                        return offer
                    if accepted_char != offer_char:
                        break
                    matched += 1
                if matched == len(accepted):
                    return offer
        return ""

    def set_accepted(self, *formats: str) -> None:
        self.accepted = list(formats)