"""
Request ID middleware.

Gives every request an identifier that shows up in the X-Request-Id
response header and, for handlers and inner middleware, in the REQUEST_ID
attribute:

    def handler(ctx):
        logger.info(f"[{ctx.get_attribute(REQUEST_ID)}] loading user")

An X-Request-Id sent by the client (or a proxy in front of the server) is
reused, so one id can follow a request across services.
"""

import secrets

from .base import Handler, Middleware
from ..attributes import AttributeKey
from ..context import Context


REQUEST_ID_HEADER = "X-Request-Id"

REQUEST_ID: AttributeKey[str] = AttributeKey("request_id")


def generate_request_id() -> str:
    """16 random bytes as 32 hex characters."""
    return secrets.token_hex(16)


class RequestIDMiddleware(Middleware):

    def __call__(self, ctx: Context, next: Handler) -> None:
        request_id = ctx.header_string(REQUEST_ID_HEADER) or generate_request_id()
        ctx.response.headers.set(REQUEST_ID_HEADER, request_id)
        next(ctx.set_attribute(REQUEST_ID, request_id))
