"""Core request-context state: errors, route parameters, engine settings and flow control."""

from __future__ import annotations

import enum
import ipaddress
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from .messages import Request, Response, SameSite

ABORT_INDEX = 63

PLATFORM_GOOGLE_APP_ENGINE = "X-Appengine-Remote-Addr"
PLATFORM_CLOUDFLARE = "CF-Connecting-IP"
PLATFORM_FLY_IO = "Fly-Client-IP"

DEFAULT_TRUSTED_PROXIES = ("0.0.0.0/0", "::/0")
DEFAULT_TRUSTED_CIDRS = tuple(ipaddress.ip_network(cidr) for cidr in DEFAULT_TRUSTED_PROXIES)
DEFAULT_MULTIPART_MEMORY = 32 << 20

Handler = Callable[["BaseContext"], Any]
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class ErrorType(enum.IntEnum):
    """Bit flags that classify errors attached to a context."""

    PRIVATE = 1 << 0
    PUBLIC = 1 << 1
    RENDER = 1 << 62
    BIND = 1 << 63
    ANY = (1 << 64) - 1


class ContextError(Exception):
    """An error attached to a context, with a type and optional metadata."""

    def __init__(self, err: Any, type: int = ErrorType.PRIVATE, meta: Any = None) -> None:
        super().__init__(err)
        self.err = err
        self.type = type
        self.meta = meta

    def set_type(self, error_type: int) -> ContextError:
        self.type = error_type
        return self

    def set_meta(self, meta: Any) -> ContextError:
        self.meta = meta
        return self

    def is_type(self, flags: int) -> bool:
        """Return True when the error's type shares a bit with flags."""
        return (int(self.type) & int(flags)) > 0

    def __str__(self) -> str:
        return str(self.err)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContextError):
            return NotImplemented
        return (self.err, int(self.type), self.meta) == (other.err, int(other.type), other.meta)

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return f"ContextError(err={self.err!r}, type={int(self.type)}, meta={self.meta!r})"


class ErrorList(list):
    """The errors collected by a context, in the order they were attached."""

    def by_type(self, error_type: int) -> ErrorList:
        """Return the errors whose type matches the given flags."""
        if not self:
            return ErrorList()
        if int(error_type) == int(ErrorType.ANY):
            return self
        return ErrorList(err for err in self if err.is_type(error_type))

    def last(self) -> ContextError | None:
        return self[-1] if self else None

    def errors(self) -> list[str]:
        """Return the messages of all errors."""
        return [str(err.err) for err in self]

    def __str__(self) -> str:
        lines = []
        for number, err in enumerate(self, start=1):
            lines.append(f"Error #{number:02d}: {err.err}\n")
            if err.meta is not None:
                lines.append(f"     Meta: {err.meta}\n")
        return "".join(lines)


@dataclass
class Param:
    """A single URL route parameter."""

    key: str = ""
    value: str = ""


class Params(list):
    """Route parameters, looked up by name; the first match wins."""

    def get(self, name: str) -> tuple[str, bool]:
        """Return (value, True) for the first parameter named name, else ("", False)."""
        for param in self:
            if param.key == name:
                return param.value, True
        return "", False

    def by_name(self, name: str) -> str:
        return self.get(name)[0]


def _parse_ip(ip: Any) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    if not ip:
        return None
    try:
        return ipaddress.ip_address(ip)
    except ValueError:
        return None


@dataclass
class EngineSettings:
    """The engine-wide options a request context consults."""

    max_multipart_memory: int = DEFAULT_MULTIPART_MEMORY
    trusted_platform: str = ""
    app_engine: bool = False
    forwarded_by_client_ip: bool = True
    remote_ip_headers: list[str] | None = field(
        default_factory=lambda: ["X-Forwarded-For", "X-Real-IP"]
    )
    context_with_fallback: bool = False
    secure_json_prefix: str = "while(1);"
    trusted_proxies: list[str] | None = field(default_factory=lambda: list(DEFAULT_TRUSTED_PROXIES))
    trusted_cidrs: list[IPNetwork] | None = field(default_factory=lambda: list(DEFAULT_TRUSTED_CIDRS))

    def set_trusted_proxies(self, proxies: Iterable[str] | None) -> None:
        """Trust the given addresses or CIDR ranges; None trusts no proxy.

        Raises ValueError on an entry that is neither; entries before it stay trusted.
        """
        if proxies is None:
            self.trusted_proxies = None
            self.trusted_cidrs = None
            return
        self.trusted_proxies = list(proxies)
        cidrs: list[IPNetwork] = []
        self.trusted_cidrs = cidrs
        for proxy in self.trusted_proxies:
            try:
                if "/" in proxy:
                    cidrs.append(ipaddress.ip_network(proxy, strict=False))
                else:
                    address = ipaddress.ip_address(proxy)
                    cidrs.append(ipaddress.ip_network(f"{address}/{address.max_prefixlen}"))
            except ValueError as exc:
                raise ValueError(f"invalid IP address or CIDR: {proxy!r}") from exc

    def is_trusted_proxy(self, ip: Any) -> bool:
        """Return True when ip lies within a trusted range."""
        address = _parse_ip(ip)
        if address is None or self.trusted_cidrs is None:
            return False
        return any(address in cidr for cidr in self.trusted_cidrs)

    def validate_header(self, header: str) -> str | None:
        """Walk a forwarding header right to left and return the client address, or None."""
        if not header:
            return None
        items = header.split(",")
        for position in range(len(items) - 1, -1, -1):
            text = items[position].strip()
            address = _parse_ip(text)
            if address is None:
                break
            if position == 0 or not self.is_trusted_proxy(address):
                return text
        return None


def _name_of_function(handler: Any) -> str:
    if handler is None:
        return ""
    module = getattr(handler, "__module__", None) or ""
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    if name is None:
        name = type(handler).__qualname__
    return f"{module}.{name}" if module else name


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class BaseContext:
    """Per-request state: handler chain, key/value store, errors and route parameters."""

    def __init__(
        self,
        request: Request | None = None,
        writer: Response | None = None,
        engine: EngineSettings | None = None,
        handlers: Sequence[Handler | None] | None = None,
        params: Iterable[Param] | None = None,
        full_path: str = "",
    ) -> None:
        self.request = request
        self.writer = writer if writer is not None else Response()
        self.engine = engine if engine is not None else EngineSettings()
        self.handlers: list[Handler | None] | None = list(handlers) if handlers is not None else None
        self.params = Params(params or ())
        self.index = -1
        self.keys: dict[Any, Any] | None = None
        self.errors = ErrorList()
        self.accepted: list[str] | None = None
        self._full_path = full_path
        self._keys_lock = threading.RLock()
        self._query_cache: dict[str, list[str]] | None = None
        self._form_cache: dict[str, list[str]] | None = None
        self._same_site = SameSite.UNSET

    # Handler chain

    def handler(self) -> Handler | None:
        """Return the main (last) handler."""
        return self.handlers[-1] if self.handlers else None

    def handler_name(self) -> str:
        return _name_of_function(self.handler())

    def handler_names(self) -> list[str]:
        """Return the names of all registered handlers, skipping empty slots."""
        return [_name_of_function(h) for h in self.handlers or () if h is not None]

    def full_path(self) -> str:
        """Return the matched route pattern, or an empty string."""
        return self._full_path

    # Flow control

    def next(self) -> None:
        """Run the pending handlers of the chain inside the calling handler."""
        self.index += 1
        while self.handlers is not None and self.index < len(self.handlers):
            current = self.handlers[self.index]
            if current is not None:
                current(self)
            self.index += 1

    def is_aborted(self) -> bool:
        return self.index >= ABORT_INDEX

    def abort(self) -> None:
        """Stop pending handlers from running; the current one continues."""
        self.index = ABORT_INDEX

    def abort_with_status(self, code: int) -> None:
        self.writer.write_header(code)
        self.writer.write_header_now()
        self.abort()

    def abort_with_error(self, code: int, err: Any) -> ContextError:
        self.abort_with_status(code)
        return self.error(err)

    # Errors

    def error(self, err: Any) -> ContextError:
        """Attach err to the context, wrapping it as a private error when needed."""
        if err is None:
            raise ValueError("err is nil")
        found: Any = err
        while found is not None and not isinstance(found, ContextError):
            found = getattr(found, "__cause__", None)
        parsed = found if isinstance(found, ContextError) else ContextError(err, ErrorType.PRIVATE)
        self.errors.append(parsed)
        return parsed

    # Key/value store

    def set(self, key: Any, value: Any) -> None:
        with self._keys_lock:
            if self.keys is None:
                self.keys = {}
            self.keys[key] = value

    def get(self, key: Any) -> tuple[Any, bool]:
        """Return (value, True) when key is set, else (None, False)."""
        with self._keys_lock:
            if self.keys is not None and key in self.keys:
                return self.keys[key], True
            return None, False

    def must_get(self, key: Any) -> Any:
        value, exists = self.get(key)
        if not exists:
            raise KeyError(f"key {key} does not exist")
        return value

    def _typed(self, key: Any, check: Callable[[Any], bool], zero: Any) -> Any:
        value, exists = self.get(key)
        if exists and value is not None and check(value):
            return value
        return zero() if callable(zero) else zero

    def get_string(self, key: Any) -> str:
        return self._typed(key, lambda v: isinstance(v, str), "")

    def get_bool(self, key: Any) -> bool:
        return self._typed(key, lambda v: isinstance(v, bool), False)

    def get_int(self, key: Any) -> int:
        return self._typed(key, _is_int, 0)

    def get_float(self, key: Any) -> float:
        return self._typed(key, lambda v: isinstance(v, float), 0.0)

    def get_time(self, key: Any) -> datetime | None:
        return self._typed(key, lambda v: isinstance(v, datetime), None)

    def get_duration(self, key: Any) -> timedelta:
        return self._typed(key, lambda v: isinstance(v, timedelta), timedelta)

    def get_string_slice(self, key: Any) -> list[str]:
        return self._typed(
            key, lambda v: isinstance(v, list) and all(isinstance(i, str) for i in v), list
        )

    def get_string_map(self, key: Any) -> dict[str, Any]:
        return self._typed(
            key, lambda v: isinstance(v, dict) and all(isinstance(k, str) for k in v), dict
        )

    def get_string_map_string(self, key: Any) -> dict[str, str]:
        return self._typed(
            key,
            lambda v: isinstance(v, dict)
            and all(isinstance(k, str) and isinstance(i, str) for k, i in v.items()),
            dict,
        )

    def get_string_map_string_slice(self, key: Any) -> dict[str, list[str]]:
        return self._typed(
            key,
            lambda v: isinstance(v, dict)
            and all(
                isinstance(k, str) and isinstance(i, list) and all(isinstance(s, str) for s in i)
                for k, i in v.items()
            ),
            dict,
        )

    # Route parameters

    def param(self, key: str) -> str:
        """Return the value of the named URL parameter, or an empty string."""
        return self.params.by_name(key)

    def add_param(self, key: str, value: str) -> None:
        self.params.append(Param(key=key, value=value))