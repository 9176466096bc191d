"""Debug-mode switch and diagnostic output."""

from __future__ import annotations

import os
import platform
import re
import sys
from typing import Any, Callable, Sequence, TextIO

DEBUG_MODE = "debug"
RELEASE_MODE = "release"
TEST_MODE = "test"

MIN_PYTHON_MINOR = 10
_PREFIX = "[WEBCTX-debug] "
_MODES = (DEBUG_MODE, RELEASE_MODE, TEST_MODE)

# Destinations for debug output; ``None`` means the current sys.stdout / sys.stderr.
default_writer: TextIO | None = None
default_error_writer: TextIO | None = None

# Optional hooks that replace the default formatting.
debug_print_func: Callable[..., None] | None = None
debug_print_route_func: Callable[[str, str, str, int], None] | None = None

_mode = DEBUG_MODE


def set_mode(mode: str) -> None:
    """Switch between debug, release and test mode; an empty string means debug."""
    global _mode
    if mode == "":
        mode = DEBUG_MODE
    if mode not in _MODES:
        raise ValueError(f"mode unknown: {mode} (available modes: {' '.join(_MODES)})")
    _mode = mode


def is_debugging() -> bool:
    """Return True when running in debug mode."""
    return _mode == DEBUG_MODE


def _stdout() -> TextIO:
    return default_writer if default_writer is not None else sys.stdout


def _stderr() -> TextIO:
    return default_error_writer if default_error_writer is not None else sys.stderr


def _name_of_function(handler: Any) -> str:
    if handler is None:
        return ""
    module = getattr(handler, "__module__", None) or ""
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    if name is None:
        name = type(handler).__qualname__
    return f"{module}.{name}" if module else name


def debug_print(format: str, *args: Any) -> None:
    """Write a printf-style message prefixed with the debug tag, in debug mode only."""
    if not is_debugging():
        return
    if debug_print_func is not None:
        debug_print_func(format, *args)
        return
    if not format.endswith("\n"):
        format += "\n"
    text = format % args if args else format
    _stdout().write(_PREFIX + text)


def debug_print_error(err: BaseException | None) -> None:
    """Report an error on the error writer when one is given and debugging is on."""
    if err is not None and is_debugging():
        _stderr().write(f"{_PREFIX}[ERROR] {err}\n")


def debug_print_route(http_method: str, absolute_path: str, handlers: Sequence[Any]) -> None:
    """Log a registered route with the name of its final handler."""
    if not is_debugging():
        return
    count = len(handlers)
    handler_name = _name_of_function(handlers[-1] if handlers else None)
    if debug_print_route_func is None:
        debug_print("%-6s %-25s --> %s (%d handlers)\n", http_method, absolute_path, handler_name, count)
    else:
        debug_print_route_func(http_method, absolute_path, handler_name, count)


def get_min_ver(version: str) -> int:
    """Return the minor component of a dotted version string."""
    first = version.find(".")
    last = version.rfind(".")
    text = version[first + 1:] if first == last else version[first + 1:last]
    if not re.fullmatch(r"[0-9]+", text):
        raise ValueError(f"invalid version: {version!r}")
    return int(text)


def debug_print_warning_default() -> None:
    """Warn about an unsupported interpreter and about preattached middleware."""
    try:
        minor = get_min_ver(platform.python_version())
    except ValueError:
        minor = None
    if minor is not None and minor < MIN_PYTHON_MINOR:
        debug_print(f"[WARNING] Now webctx requires Python 3.{MIN_PYTHON_MINOR}+.\n\n")
    debug_print(
        "[WARNING] Creating an Engine instance with the Logger and Recovery middleware already attached.\n\n"
    )


def debug_print_warning_new() -> None:
    """Warn that debug mode is active."""
    debug_print(
        '[WARNING] Running in "debug" mode. Switch to "release" mode in production.\n'
        " - using env:\texport WEBCTX_MODE=release\n"
        " - using code:\twebctx.debug.set_mode(webctx.debug.RELEASE_MODE)\n\n"
    )


def debug_print_warning_set_html_template() -> None:
    """Warn that templates should be installed before serving."""
    debug_print(
        "[WARNING] Since set_html_template() is NOT thread-safe. It should only be called\n"
        "at initialization. ie. before any route is registered or the router is listening in a socket:\n\n"
        "\trouter = default()\n"
        "\trouter.set_html_template(template)  # << good place\n\n"
    )


set_mode(os.environ.get("WEBCTX_MODE", ""))