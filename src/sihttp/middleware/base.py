"""
=============================================================================
MIDDLEWARE CHAIN
=============================================================================

A handler takes a Context and writes the response through it. A middleware
turns one handler (the `next` one) into another handler:

    Handler    = Callable[[Context], None]
    middleware : Handler → Handler

=============================================================================
NESTING ORDER
=============================================================================

The first middleware registered is the outermost wrapper: it runs first on
the way in and last on the way out.

    pipeline.add(M1)
    pipeline.add(M2)
    handler = pipeline.wrap(H)

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   M1 (before)                                                        │
    │   │   M2 (before)                                                    │
    │   │   │   H                                                          │
    │   │   M2 (after)                                                     │
    │   M1 (after)                                                         │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A middleware may:

    - read or replace the Context before delegating
      (next(ctx.set_attribute(USER, user)))
    - not delegate at all: write a response itself and return, so nothing
      inside it runs
    - act after `next` returns (timing, logging)

=============================================================================
THREE WAYS TO WRITE ONE
=============================================================================

    # 1. A class
    class Timing(Middleware):
        def __call__(self, ctx, next):
            start = time.monotonic()
            next(ctx)
            ...

    # 2. A (ctx, next) function
    @function_middleware
    def require_json(ctx, next):
        if not ctx.is_json():
            ctx.send_error_json("JSON required", 415)
            return
        next(ctx)

    # 3. A function that only looks at the request on the way in
    @mw
    def tag(ctx):
        return ctx.set_attribute(TAG, "v1")

A bare callable that maps a handler to a handler is accepted too:

    pipeline.add(lambda next: lambda ctx: next(ctx))

=============================================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterator, List, Optional, Union

from ..context import Context


logger = logging.getLogger(__name__)


# =============================================================================
# TYPE ALIASES
# =============================================================================

Handler = Callable[[Context], None]

# The pure form of a middleware: next handler in, handler out
Transform = Callable[[Handler], Handler]


class Middleware(ABC):
    """
    Base class for middleware.

    Subclasses implement __call__(ctx, next). wrap() turns the instance
    into the pure Handler → Handler form the pipeline composes.
    """

    @abstractmethod
    def __call__(self, ctx: Context, next: Handler) -> None:
        """
        Process one request.

        Call next(ctx), or next() with a derived Context, to continue the
        chain. Returning without calling it short-circuits the chain.
        """

    def wrap(self, next: Handler) -> Handler:
        """Bind this middleware to the handler it delegates to."""
        def handler(ctx: Context) -> None:
            self(ctx, next)

        return handler

    @property
    def name(self) -> str:
        """The middleware name used in debug logs and route listings."""
        return self.__class__.__name__


class MiddlewarePipeline:
    """
    An ordered list of middleware that wraps a final handler.

        pipeline = MiddlewarePipeline()
        pipeline.add(LoggerMiddleware()).add(RequestIDMiddleware())

        handler = pipeline.wrap(router_dispatch)
        handler(ctx)
    """

    def __init__(self):
        self._middleware: List[Middleware] = []

    def add(self, middleware: Union[Middleware, Transform]) -> "MiddlewarePipeline":
        """
        Append a middleware (first added = outermost).

        Accepts a Middleware instance or a bare Handler → Handler callable.
        """
        if not isinstance(middleware, Middleware):
            if not callable(middleware):
                raise TypeError(
                    f"Middleware must be a Middleware or a callable, "
                    f"got {type(middleware).__name__}"
                )
            middleware = TransformMiddleware(middleware)

        self._middleware.append(middleware)
        logger.debug(f"Added middleware: {middleware.name}")
        return self

    def use(self, *middleware: Union[Middleware, Transform]) -> "MiddlewarePipeline":
        """Add several middleware at once, in order."""
        for item in middleware:
            self.add(item)
        return self

    def wrap(self, handler: Handler) -> Handler:
        """
        Wrap `handler` with every middleware in the pipeline.

        Given [M1, M2, M3] the result is M1(M2(M3(handler))): wrapping runs
        in reverse so the first-added middleware ends up outermost.
        """
        current = handler
        for middleware in reversed(self._middleware):
            current = middleware.wrap(current)
        return current

    def __len__(self) -> int:
        return len(self._middleware)

    def __iter__(self) -> Iterator[Middleware]:
        return iter(self._middleware)


# =============================================================================
# FUNCTION MIDDLEWARE
# =============================================================================

class FunctionMiddleware(Middleware):
    """
    Wraps a (ctx, next) function as middleware.

        def my_func(ctx, next):
            next(ctx)

        pipeline.add(FunctionMiddleware(my_func, name="my_func"))
    """

    def __init__(
        self,
        func: Callable[[Context, Handler], None],
        name: Optional[str] = None,
    ):
        self._func = func
        self._name = name or getattr(func, "__name__", type(func).__name__)

    def __call__(self, ctx: Context, next: Handler) -> None:
        self._func(ctx, next)

    @property
    def name(self) -> str:
        return self._name


class TransformMiddleware(Middleware):
    """Adapts a bare Handler → Handler callable to the Middleware interface."""

    def __init__(self, transform: Transform, name: Optional[str] = None):
        self._transform = transform
        self._name = name or getattr(transform, "__name__", type(transform).__name__)

    def __call__(self, ctx: Context, next: Handler) -> None:
        self._transform(next)(ctx)

    def wrap(self, next: Handler) -> Handler:
        return self._transform(next)

    @property
    def name(self) -> str:
        return self._name


def function_middleware(func: Callable[[Context, Handler], None]) -> FunctionMiddleware:
    """Decorator form of FunctionMiddleware."""
    return FunctionMiddleware(func)


def mw(func: Callable[[Context], Optional[Context]]) -> FunctionMiddleware:
    """
    Build a middleware from a function that runs before the handler.

    `func` receives the Context. If it returns a Context, that one is
    passed on (so it can add attributes); otherwise the original is. The
    chain always continues: use function_middleware to short-circuit.

        @mw
        def stamp(ctx):
            ctx.add_header("X-Served-By", "api-1")
    """
    def run(ctx: Context, next: Handler) -> None:
        result = func(ctx)
        next(result if isinstance(result, Context) else ctx)

    return FunctionMiddleware(run, name=getattr(func, "__name__", None))
