import io
import platform
import re

import pytest

from webctx import debug
from webctx.debug import (
    DEBUG_MODE,
    RELEASE_MODE,
    TEST_MODE,
    debug_print,
    debug_print_error,
    debug_print_route,
    debug_print_warning_default,
    debug_print_warning_new,
    debug_print_warning_set_html_template,
    get_min_ver,
    is_debugging,
    set_mode,
)


@pytest.fixture(autouse=True)
def _restore_mode():
    yield
    set_mode(TEST_MODE)


@pytest.fixture
def captured(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(debug, "default_writer", buffer)
    monkeypatch.setattr(debug, "default_error_writer", buffer)
    return buffer


def _written():
    return debug.default_writer.getvalue()


def handler_name_test(c):
    pass


def test_is_debugging():
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    set_mode(RELEASE_MODE)
    assert is_debugging() is False
    set_mode(TEST_MODE)
    assert is_debugging() is False


def test_empty_mode_means_debug():
    set_mode("")
    assert is_debugging() is True


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        set_mode("bogus")


def test_debug_print(captured):
    set_mode(DEBUG_MODE)
    set_mode(RELEASE_MODE)
    debug_print("DEBUG this!")
    set_mode(TEST_MODE)
    debug_print("DEBUG this!")
    assert is_debugging() is False
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print("these are %d %s", 2, "error messages")
    set_mode(TEST_MODE)
    assert _written() == "[WEBCTX-debug] these are 2 error messages\n"


def test_debug_print_func_hook(captured, monkeypatch):
    calls = []
    monkeypatch.setattr(debug, "debug_print_func", lambda fmt, *args: calls.append((fmt, args)))
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print("hello %s", "x")
    assert calls == [("hello %s", ("x",))]
    assert _written() == ""


def test_debug_print_error(captured):
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_error(None)
    debug_print_error(RuntimeError("this is an error"))
    assert _written() == "[WEBCTX-debug] [ERROR] this is an error\n"


def test_debug_print_routes(captured):
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_route("GET", "/path/to/route/:param", [lambda c: None, handler_name_test])
    assert re.fullmatch(
        r"\[WEBCTX-debug\] GET    /path/to/route/:param     --> (.*\.)?handler_name_test \(2 handlers\)\n",
        _written(),
    )


def test_debug_print_route_func(captured, monkeypatch):
    def route_func(method, path, name, count):
        debug.default_writer.write("[WEBCTX-debug] %-6s %-40s --> %s (%d handlers)\n" % (method, path, name, count))

    monkeypatch.setattr(debug, "debug_print_route_func", route_func)
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_route("GET", "/path/to/route/:param1/:param2", [lambda c: None, handler_name_test])
    assert re.fullmatch(
        r"\[WEBCTX-debug\] GET    /path/to/route/:param1/:param2           --> (.*\.)?handler_name_test \(2 handlers\)\n",
        _written(),
    )


def test_debug_print_route_silent_outside_debug(captured):
    set_mode(RELEASE_MODE)
    assert is_debugging() is False
    debug_print_route("GET", "/", [handler_name_test])
    assert _written() == ""


def test_debug_print_warning_set_html_template(captured):
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_warning_set_html_template()
    assert _written() == (
        "[WEBCTX-debug] [WARNING] Since set_html_template() is NOT thread-safe. It should only be called\n"
        "at initialization. ie. before any route is registered or the router is listening in a socket:\n\n"
        "\trouter = default()\n"
        "\trouter.set_html_template(template)  # << good place\n\n"
    )


def test_debug_print_warning_default(captured):
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_warning_default()
    expected = (
        "[WEBCTX-debug] [WARNING] Creating an Engine instance with the Logger and Recovery "
        "middleware already attached.\n\n"
    )
    if get_min_ver(platform.python_version()) < debug.MIN_PYTHON_MINOR:
        expected = "[WEBCTX-debug] [WARNING] Now webctx requires Python 3.10+.\n\n" + expected
    assert _written() == expected


def test_debug_print_warning_new(captured):
    set_mode(DEBUG_MODE)
    assert is_debugging() is True
    debug_print_warning_new()
    assert _written() == (
        '[WEBCTX-debug] [WARNING] Running in "debug" mode. Switch to "release" mode in production.\n'
        " - using env:\texport WEBCTX_MODE=release\n"
        " - using code:\twebctx.debug.set_mode(webctx.debug.RELEASE_MODE)\n\n"
    )


def test_get_min_ver():
    with pytest.raises(ValueError):
        get_min_ver("go1")
    assert get_min_ver("go1.1") == 1
    assert get_min_ver("go1.1.1") == 1
    with pytest.raises(ValueError):
        get_min_ver("go1.1.1.1")