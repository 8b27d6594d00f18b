"""
Unit tests for the route table and the Router facade.
"""

import pytest

from sihttp.http import HTTPRequest, ResponseRecorder
from sihttp.http.routing import RouteTable, compile_pattern
from sihttp.middleware import CleanPathMiddleware, function_middleware
from sihttp.router import RouteInfo, Router


def make_request(method: str, path: str) -> HTTPRequest:
    """Helper to create a request for testing."""
    return HTTPRequest(method=method, path=path)


def serve(router: Router, method: str, path: str) -> ResponseRecorder:
    recorder = ResponseRecorder()
    router(make_request(method, path), recorder)
    return recorder


def dummy_handler(ctx):
    ctx.send_json({"path": ctx.path()})


class TestRouteTable:
    """Tests for the RouteTable engine."""

    def test_add_route(self):
        table = RouteTable()
        table.add("get", "/users", dummy_handler)

        assert len(table) == 1
        assert table.routes()[0].pattern == "/users"
        assert table.routes()[0].method == "GET"

    def test_pattern_must_be_rooted(self):
        with pytest.raises(ValueError):
            RouteTable().add("GET", "users", dummy_handler)

    def test_match_static_path(self):
        table = RouteTable()
        table.add("GET", "/users", dummy_handler)
        table.add("GET", "/posts", dummy_handler)

        assert table.match("GET", "/users").route.pattern == "/users"
        assert table.match("GET", "/posts").route.pattern == "/posts"
        assert table.match("GET", "/comments") is None

    def test_match_with_method(self):
        table = RouteTable()
        table.add("GET", "/users", dummy_handler)
        table.add("POST", "/users", dummy_handler)

        assert table.match("GET", "/users").route.method == "GET"
        assert table.match("POST", "/users").route.method == "POST"
        assert table.match("DELETE", "/users") is None

    def test_match_dynamic_params(self):
        table = RouteTable()
        table.add("GET", "/users/:id", dummy_handler)
        table.add("GET", "/users/{user_id}/posts/:post_id", dummy_handler)

        assert table.match("GET", "/users/123").params == {"id": "123"}
        assert table.match("GET", "/users/456/posts/789").params == {
            "user_id": "456",
            "post_id": "789",
        }

    def test_match_wildcard(self):
        table = RouteTable()
        table.add("GET", "/static/*path", dummy_handler)

        match = table.match("GET", "/static/css/site.css")
        assert match.params == {"path": "css/site.css"}

    def test_trailing_slash(self):
        table = RouteTable()
        table.add("GET", "/users", dummy_handler)

        assert table.match("GET", "/users/") is not None

    def test_first_registered_wins(self):
        table = RouteTable()
        table.add("GET", "/users/me", dummy_handler)
        table.add("GET", "/users/:id", dummy_handler)

        assert table.match("GET", "/users/me").route.pattern == "/users/me"

    def test_allowed_methods(self):
        table = RouteTable()
        table.add("POST", "/users", dummy_handler)
        table.add("GET", "/users", dummy_handler)

        assert table.allowed_methods("/users") == ["GET", "POST"]
        assert table.allowed_methods("/nothing") == []

    def test_compile_root(self):
        regex, names = compile_pattern("/")

        assert regex.match("/")
        assert names == []


class TestRouterDispatch:
    """Tests for Router registration and dispatch."""

    def test_decorator_registration(self):
        router = Router()

        @router.get("/users/:id")
        def get_user(ctx):
            ctx.send_json({"id": ctx.param_int("id")})

        response = serve(router, "GET", "/users/42")
        assert response.status == 200
        assert response.json() == {"id": 42}

    def test_direct_registration(self):
        router = Router()
        router.handle("post", "/items", lambda ctx: ctx.send_string("created", 201))

        assert serve(router, "POST", "/items").status == 201

    @pytest.mark.parametrize("method", [
        "get", "post", "put", "patch", "delete", "head", "options", "connect", "trace",
    ])
    def test_method_helpers(self, method):
        router = Router()
        getattr(router, method)("/thing", lambda ctx: ctx.no_content())

        assert serve(router, method.upper(), "/thing").status == 204

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            Router().handle("BREW", "/coffee", dummy_handler)

    def test_default_not_found(self):
        response = serve(Router(), "GET", "/missing")

        assert response.status == 404
        assert response.json() == {"error": {"code": 404, "message": "Not Found"}}

    def test_custom_not_found(self):
        router = Router()

        @router.not_found()
        def missing(ctx):
            ctx.not_found()

        response = serve(router, "GET", "/missing")
        assert response.status == 404
        assert response.headers["X-Error-Code"] == "404"

    def test_method_not_allowed(self):
        router = Router()
        router.get("/users", dummy_handler)
        router.post("/users", dummy_handler)

        response = serve(router, "DELETE", "/users")
        assert response.status == 405
        assert response.headers["Allow"] == "GET, POST"

    def test_middleware_runs_around_lookup(self):
        """Path-rewriting middleware affects which route is chosen."""
        router = Router()
        router.use(CleanPathMiddleware())
        router.get("/users/:id", lambda ctx: ctx.send_string(ctx.param_string("id")))

        response = serve(router, "GET", "//users/./9")
        assert response.text == "9"

    def test_middleware_runs_for_not_found(self):
        calls = []

        @function_middleware
        def audit(ctx, next):
            calls.append(ctx.path())
            next(ctx)

        router = Router()
        router.use(audit)
        serve(router, "GET", "/nowhere")

        assert calls == ["/nowhere"]

    def test_use_after_first_request(self):
        calls = []
        router = Router()
        router.get("/", lambda ctx: ctx.no_content())
        serve(router, "GET", "/")

        router.use(function_middleware(lambda ctx, next: (calls.append("late"), next(ctx))))
        serve(router, "GET", "/")

        assert calls == ["late"]


class TestRouterMounts:
    """Tests for mounted sub-routers."""

    def build(self):
        calls = []

        @function_middleware
        def outer(ctx, next):
            calls.append("outer")
            next(ctx)

        @function_middleware
        def inner(ctx, next):
            calls.append("inner")
            next(ctx)

        api = Router()
        api.use(inner)
        api.get("/users/:id", lambda ctx: ctx.send_json({
            "id": ctx.param_string("id"),
            "path": ctx.path(),
        }))
        api.get("/", lambda ctx: ctx.send_string("api root"))

        root = Router()
        root.use(outer)
        root.mount("/api", api)
        return root, api, calls

    def test_prefix_is_stripped(self):
        root, _, calls = self.build()

        response = serve(root, "GET", "/api/users/5")
        assert response.json() == {"id": "5", "path": "/api/users/5"}
        assert calls == ["outer", "inner"]

    def test_mount_root(self):
        root, _, _ = self.build()

        assert serve(root, "GET", "/api").text == "api root"
        assert serve(root, "GET", "/api/").text == "api root"

    def test_prefix_matches_whole_segments(self):
        root, _, _ = self.build()

        assert serve(root, "GET", "/apix/users/5").status == 404

    def test_not_found_inherited(self):
        root, _, _ = self.build()
        root.not_found(lambda ctx: ctx.send_string("root 404", 404))

        response = serve(root, "GET", "/api/nothing")
        assert response.status == 404
        assert response.text == "root 404"

    def test_own_not_found_preferred(self):
        root, api, _ = self.build()
        root.not_found(lambda ctx: ctx.send_string("root 404", 404))
        api.not_found(lambda ctx: ctx.send_string("api 404", 404))

        assert serve(root, "GET", "/api/nothing").text == "api 404"

    def test_invalid_mounts(self):
        router = Router()

        with pytest.raises(ValueError):
            router.mount("api", Router())
        with pytest.raises(ValueError):
            router.mount("/self", router)


class TestRouterIntrospection:
    """Tests for walk() and print_routes()."""

    def test_walk(self):
        api = Router()
        api.use(function_middleware(lambda ctx, next: next(ctx)))
        api.get("/users", dummy_handler)

        root = Router()
        root.use(CleanPathMiddleware())
        root.get("/", dummy_handler)
        root.mount("/api", api)

        assert list(root.walk()) == [
            RouteInfo("GET", "/", 1),
            RouteInfo("GET", "/api/users", 2),
        ]

    def test_print_routes(self, capsys):
        router = Router()
        router.post("/users/:id", dummy_handler)
        router.print_routes()

        assert capsys.readouterr().out == "[POST]: '/users/:id' has 0 middlewares\n"
