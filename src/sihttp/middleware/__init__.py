"""
=============================================================================
MIDDLEWARE
=============================================================================

The chain machinery (Middleware, MiddlewarePipeline, mw, ...) and the
middlewares bundled with sihttp:

    LoggerMiddleware     one access log line per request, status captured
                         from what the handler actually wrote
    RequestIDMiddleware  X-Request-Id header and REQUEST_ID attribute
    CleanPathMiddleware  "//users/./1" routes as "/users/1"

    server = Server(":8080", middlewares=[
        LoggerMiddleware(terminal=detect_terminal(sys.stderr)),
        RequestIDMiddleware(),
        CleanPathMiddleware(),
    ])

=============================================================================
"""

from .base import (
    FunctionMiddleware,
    Handler,
    Middleware,
    MiddlewarePipeline,
    TransformMiddleware,
    function_middleware,
    mw,
)
from .logging import (
    FlushableStatusRecorder,
    LoggerMiddleware,
    StatusRecorder,
    wrap_status_recorder,
)
from .request_id import REQUEST_ID, REQUEST_ID_HEADER, RequestIDMiddleware
from .clean_path import CleanPathMiddleware, clean_path
from .terminal import TerminalConfig, detect_terminal

__all__ = [
    # Chain
    "Handler",
    "Middleware",
    "MiddlewarePipeline",
    "FunctionMiddleware",
    "TransformMiddleware",
    "function_middleware",
    "mw",

    # Bundled middleware
    "LoggerMiddleware",
    "StatusRecorder",
    "FlushableStatusRecorder",
    "wrap_status_recorder",
    "RequestIDMiddleware",
    "REQUEST_ID",
    "REQUEST_ID_HEADER",
    "CleanPathMiddleware",
    "clean_path",
    "TerminalConfig",
    "detect_terminal",
]
