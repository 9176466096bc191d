# webctx

`webctx` provides the context object that an HTTP handler works with while it
serves one request. The context carries the handler chain, per-request values,
errors, request input and the response being written. The package has no
dependencies outside the standard library.

## Modules

- `webctx.context`: `Context` is the class handlers receive.
  `create_test_context(writer, engine)` returns a `(Context, EngineSettings)`
  pair. The new context has no request attached.
- `webctx.core`: `BaseContext` holds the flow control, key/value store, errors
  and route parameters. It also defines `ContextError`, `ErrorList`,
  `ErrorType`, `Param`, `Params` and `EngineSettings`, which holds trusted
  proxies, the trusted platform header, remote IP headers, the secure JSON
  prefix and similar settings.
- `webctx.inputs`: `InputMixin` covers the query string, form bodies, uploads,
  headers, cookies, client IP and content negotiation. This module also
  provides `parse_accept()` and `filter_flags()`.
- `webctx.rendering`: `RenderMixin` covers status, headers, cookies and the
  renderers. The renderers are `JSONRender`, `StringRender`, `DataRender`,
  `ReaderRender`, `RedirectRender` and `SSEvent`. The module also defines
  `Negotiate`, `body_allowed_for_status()` and `escape_quotes()`.
- `webctx.messages`: the `Request`, `Response`, `Headers`, `Cookie`,
  `SameSite` and `UploadedFile` classes.
- `webctx.debug`: `set_mode()`, `is_debugging()` and the `debug_print*`
  helpers.

## What a context does

- **Flow control**
  - `next()` runs the pending handlers in the chain.
  - `abort()`, `abort_with_status()` and `abort_with_error()` stop the chain.
  - `is_aborted()` reports whether the chain was stopped.
  - `handler()`, `handler_name()` and `handler_names()` describe the chain.
  - `full_path()` returns the matched route pattern.
- **Per-request values**
  - `set()` stores a value.
  - `get()` returns `(value, exists)`.
  - `must_get()` raises `KeyError` when the key is missing.
  - The typed getters are `get_string`, `get_bool`, `get_int`, `get_float`,
    `get_time`, `get_duration`, `get_string_slice`, `get_string_map`,
    `get_string_map_string` and `get_string_map_string_slice`. Each returns a
    zero value when the key is missing or the value has another type.
- **Errors**
  - `error(err)` appends a `ContextError` to `ctx.errors`. A plain exception
    is wrapped as `ErrorType.PRIVATE`.
  - Passing `None` raises `ValueError`.
- **Request input**
  - Route parameters: `param()` and `add_param()`.
  - Query string: `query()`, `default_query()`, `get_query()`,
    `query_array()` and `query_map()`. `query_map()` collects `key[sub]=value`
    entries.
  - Form bodies: `post_form()`, `default_post_form()`, `post_form_array()` and
    `post_form_map()`. These read both URL-encoded and multipart bodies.
  - Uploads: `form_file()`, `multipart_form()` and `save_uploaded_file()`.
  - Request data: `get_header()`, `content_type()`, `cookie()`,
    `get_raw_data()` and `is_websocket()`.
  - Addresses: `remote_ip()` returns the host of the remote address.
    `client_ip()` resolves the client address using the trusted platform
    header and the trusted proxies set in `EngineSettings`.
- **Content negotiation**
  - `negotiate_format(*offered)` matches the offered formats against the
    `Accept` header, or against formats given with `set_accepted()`. It raises
    `ValueError` when nothing is offered.
  - `negotiate(code, Negotiate(...))` renders JSON when JSON is agreed.
    Otherwise it aborts with 406.
- **Rendering**
  - JSON variants: `json`, `indented_json`, `secure_json`, `jsonp`,
    `ascii_json`, `pure_json` and `abort_with_status_json`.
  - Other bodies: `string`, `data`, `data_from_reader`, `redirect`, `file`,
    `file_attachment`, `sse_event` and `stream`.
  - Headers and cookies: `header`, `set_cookie`, `set_cookie_data` and
    `set_same_site`.
  - Statuses 1xx, 204 and 304 get headers but no body.
  - `redirect()` raises `ValueError` for any status other than 201 or 300–308.
- **Cancellation**
  - `deadline()`, `done()` and `err()` consult `request.context`. So does
    `value()` for keys it does not find itself. This happens only when
    `engine.context_with_fallback` is set.
  - `copy()` returns a detached copy with the chain aborted.
  - `reset()` clears the context for reuse.

## Example

```python
from webctx.context import create_test_context
from webctx.messages import Request, Response

response = Response()
ctx, engine = create_test_context(response, None)
ctx.request = Request(method="GET", url="/users?id=42")

ctx.set("user", "gopher")
ctx.json(201, {"id": ctx.query("id"), "user": ctx.get_string("user")})

print(response.status)                        # 201
print(response.headers.get("Content-Type"))   # application/json; charset=utf-8
print(bytes(response.body))                   # b'{"id":"42","user":"gopher"}'
```

## Debug mode

The mode starts from the `WEBCTX_MODE` environment variable. Its values are
`debug`, `release` and `test`; an empty value means `debug`. Output goes to
`debug.default_writer`, which falls back to `sys.stdout`.

```python
from webctx import debug

debug.set_mode(debug.DEBUG_MODE)
debug.debug_print("serving %s", "/users")   # "[WEBCTX-debug] serving /users"
debug.set_mode(debug.RELEASE_MODE)
debug.debug_print("silent")                 # nothing is written
```

## What it does not do

- It has no router, no engine and no server. You build contexts yourself, and
  nothing listens on a socket.
- It does not bind request bodies onto objects.
- It renders HTML templates, XML, YAML, TOML and protobuf in no form.
  `negotiate()` produces JSON or a 406.

## Running the tests

```
pip install ".[test]"
pytest
```