"""The request context handed to every handler: input, output, flow control and cancellation."""

from __future__ import annotations

import copy
import enum
from datetime import datetime
from typing import Any, Iterable, Sequence

from .core import ABORT_INDEX, BaseContext, EngineSettings, Handler, Param
from .inputs import InputMixin
from .messages import Request, Response, SameSite
from .rendering import RenderMixin

CONTEXT_KEY = "_webctx/contextkey"


class _ContextKeyType(enum.Enum):
    REQUEST = 0


CONTEXT_REQUEST_KEY = _ContextKeyType.REQUEST


class Context(InputMixin, RenderMixin, BaseContext):
    """Everything a handler needs for one request.

    The request may carry a cancellation context in ``request.context``: any object
    with ``deadline()``, ``done()``, ``err()`` and ``value(key)`` methods.  It is
    consulted only when the engine enables ``context_with_fallback``.
    """

    def __init__(
        self,
        request: Request | None = None,
        writer: Response | None = None,
        engine: EngineSettings | None = None,
        handlers: Sequence[Handler | None] | None = None,
        params: Iterable[Param] | None = None,
        full_path: str = "",
    ) -> None:
        super().__init__(
            request=request,
            writer=writer,
            engine=engine,
            handlers=handlers,
            params=params,
            full_path=full_path,
        )
        self._base_writer = self.writer

    def reset(self) -> None:
        """Return the context to its pristine state so it can serve another request."""
        self.writer = self._base_writer
        self.params.clear()
        self.handlers = None
        self.index = -1
        self._full_path = ""
        with self._keys_lock:
            self.keys = None
        self.errors.clear()
        self.accepted = None
        self._query_cache = None
        self._form_cache = None
        self._same_site = SameSite.UNSET

    def copy(self) -> Context:
        """Return a detached copy that is safe to use after the request has finished."""
        detached = Response(
            status=self.writer.status, headers=copy.copy(self.writer.headers)
        )
        clone = Context(
            request=self.request,
            writer=detached,
            engine=self.engine,
            params=[Param(key=p.key, value=p.value) for p in self.params],
            full_path=self._full_path,
        )
        clone.index = ABORT_INDEX
        with self._keys_lock:
            clone.keys = dict(self.keys or {})
        return clone

    def has_request_context(self) -> bool:
        """Return True when fallback is enabled and the request carries a context."""
        has_fallback = self.engine is not None and self.engine.context_with_fallback
        has_context = self.request is not None and self.request.context is not None
        return has_fallback and has_context

    def deadline(self) -> tuple[datetime | None, bool]:
        """Return (deadline, True) from the request context, or (None, False)."""
        if not self.has_request_context():
            return None, False
        return self.request.context.deadline()

    def done(self) -> Any:
        """Return the request context's done signal, or None."""
        if not self.has_request_context():
            return None
        return self.request.context.done()

    def err(self) -> BaseException | None:
        """Return the request context's error, or None."""
        if not self.has_request_context():
            return None
        return self.request.context.err()

    def value(self, key: Any) -> Any:
        """Look up key: the request, the context itself, stored keys, then the request context."""
        if key == CONTEXT_REQUEST_KEY:
            return self.request
        if key == CONTEXT_KEY:
            return self
        if isinstance(key, str):
            found, exists = self.get(key)
            if exists:
                return found
        if not self.has_request_context():
            return None
        return self.request.context.value(key)


def create_test_context(
    writer: Response | None = None, engine: EngineSettings | None = None
) -> tuple[Context, EngineSettings]:
    """Return a fresh context without a request, and the engine settings it uses."""
    settings = engine if engine is not None else EngineSettings()
    context = Context(writer=writer if writer is not None else Response(), engine=settings)
    return context, settings