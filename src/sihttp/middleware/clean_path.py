"""
Clean path middleware.

Normalizes the request path before routing, so sloppy URLs reach the
route they were meant for:

    //users////1     → /users/1
    /users/./1       → /users/1
    /a/b/../c/       → /a/c
"""

from .base import Handler, Middleware
from ..context import Context


def clean_path(path: str) -> str:
    """
    Lexically clean a URL path.

    Repeated slashes collapse, "." segments are dropped and ".." removes the
    segment before it (never climbing above the root). The result is
    rooted and has no trailing slash unless it is "/" itself.
    """
    segments: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)

    return "/" + "/".join(segments)


class CleanPathMiddleware(Middleware):
    """Rewrites request.path (and the path left to route) with clean_path()."""

    def __call__(self, ctx: Context, next: Handler) -> None:
        request = ctx.request
        request.path = clean_path(request.path)
        request.route_path = clean_path(request.route_path)
        next(ctx)
