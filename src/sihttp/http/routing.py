"""
=============================================================================
ROUTE TABLE
=============================================================================

The matching engine underneath sihttp.Router. It knows nothing about
middleware, contexts or mounting; it maps (method, path) to a handler and
the path parameters it captured.

=============================================================================
ROUTE PATTERNS
=============================================================================

    Pattern                 Path                    Params
    ──────────────────────  ──────────────────────  ─────────────────────────
    /users                  /users                  {}
    /users/:id              /users/42               {"id": "42"}
    /users/{id}             /users/42               {"id": "42"}
    /files/*path            /files/a/b.txt          {"path": "a/b.txt"}
    /files/*                /files/a/b.txt          {"*": "a/b.txt"}

Patterns compile to anchored regexes with one positional group per
parameter, mapped back to the parameter names after a match:

    /users/:id/posts/:post_id
        → ^/users/(?P<p0>[^/]+)/posts/(?P<p1>[^/]+)$     names: [id, post_id]

First registered, first matched. Register specific routes before wildcards.

=============================================================================
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .request import HTTPRequest


@dataclass
class Route:
    """
    A registered route: one pattern, one method, one handler.

    `handler` is opaque to the table; sihttp.Router stores Context
    handlers here.
    """

    pattern: str
    method: str
    handler: Callable[..., Any]

    _regex: Optional[re.Pattern] = field(default=None, repr=False)
    _param_names: List[str] = field(default_factory=list, repr=False)


@dataclass
class RouteMatch:
    """A successful lookup: the route and the parameters it captured."""

    route: Route
    params: Dict[str, str]


class RouteTable:
    """
    Ordered list of compiled routes.

        table = RouteTable()
        table.add("GET", "/users/:id", get_user)

        match = table.match("GET", "/users/42")
        match.params          # {"id": "42"}

        table.allowed_methods("/users/42")   # ["GET"]
    """

    def __init__(self):
        self._routes: List[Route] = []

    def add(self, method: str, pattern: str, handler: Callable[..., Any]) -> Route:
        """Compile and register a route."""
        if not pattern.startswith("/"):
            raise ValueError(f"Route pattern must start with '/': {pattern!r}")

        regex, param_names = compile_pattern(pattern)
        route = Route(
            pattern=pattern,
            method=method.upper(),
            handler=handler,
            _regex=regex,
            _param_names=param_names,
        )
        self._routes.append(route)
        return route

    def match(self, method: str, path: str) -> Optional[RouteMatch]:
        """First route whose method and pattern both match, or None."""
        method = method.upper()
        path = _normalize(path)

        for route in self._routes:
            if route.method != method:
                continue
            found = route._regex.match(path)
            if found:
                return RouteMatch(route=route, params=_params(route, found))

        return None

    def allowed_methods(self, path: str) -> List[str]:
        """
        Methods registered for a path, used for the Allow header of a 405.
        Empty when no pattern matches the path at all.
        """
        path = _normalize(path)
        return sorted({
            route.method for route in self._routes if route._regex.match(path)
        })

    def routes(self) -> List[Route]:
        """Registered routes in registration order."""
        return list(self._routes)

    def __len__(self) -> int:
        return len(self._routes)


def compile_pattern(pattern: str) -> tuple[re.Pattern, List[str]]:
    """
    Compile a route pattern into a regex and its parameter names.

        :name / {name}   one path segment
        *name / *        the rest of the path (last segment only)
    """
    param_names: List[str] = []
    regex_parts = ["^"]

    for segment in pattern.split("/"):
        if not segment:
            continue

        regex_parts.append("/")

        if segment.startswith(":") or (segment.startswith("{") and segment.endswith("}")):
            name = segment[1:-1] if segment.startswith("{") else segment[1:]
            param_names.append(name)
            regex_parts.append(f"(?P<p{len(param_names) - 1}>[^/]+)")
        elif segment.startswith("*"):
            name = segment[1:] or "*"
            param_names.append(name)
            regex_parts.append(f"(?P<p{len(param_names) - 1}>.*)")
            break
        else:
            regex_parts.append(re.escape(segment))

    if len(regex_parts) == 1:
        regex_parts.append("/")

    regex_parts.append("$")
    return re.compile("".join(regex_parts)), param_names


def lookup_path_param(request: HTTPRequest, name: str) -> str:
    """The value captured for `name` by the router, "" when absent."""
    return request.path_params.get(name, "")


def _params(route: Route, found: re.Match) -> Dict[str, str]:
    # Groups are named p0, p1, ... so any parameter name is allowed
    return {
        name: found.group(f"p{index}")
        for index, name in enumerate(route._param_names)
    }


def _normalize(path: str) -> str:
    """"/users/" and "/users" match the same routes."""
    if path in ("", "/"):
        return "/"
    return "/" + path.strip("/")
