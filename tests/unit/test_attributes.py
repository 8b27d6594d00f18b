"""
Unit tests for the request attribute store.
"""

import pytest

from sihttp.attributes import AttributeKey, Attributes

from conftest import make_ctx


USER = AttributeKey("user")
ROLE = AttributeKey("role")


class TestAttributes:
    """Tests for the immutable Attributes mapping."""

    def test_set_returns_new_store(self):
        base = Attributes()
        child = base.set(USER, "ana")

        assert base.get(USER) is None
        assert child.get(USER) == "ana"
        assert len(base) == 0
        assert len(child) == 1

    def test_missing_key_default(self):
        attrs = Attributes()

        assert attrs.get(USER) is None
        assert attrs.get(USER, "nobody") == "nobody"
        with pytest.raises(KeyError):
            attrs[USER]

    def test_keys_compared_by_identity(self):
        """Two keys with the same name are still different slots."""
        other_user = AttributeKey("user")
        attrs = Attributes().set(USER, "ana")

        assert attrs.get(other_user) is None

    def test_string_keys_rejected(self):
        with pytest.raises(TypeError):
            Attributes().set("user", "ana")

        with pytest.raises(TypeError):
            Attributes({"user": "ana"})

    def test_store_is_read_only(self):
        attrs = Attributes().set(USER, "ana")

        with pytest.raises(TypeError):
            attrs._values[ROLE] = "admin"


class TestContextAttributes:
    """Copy-on-write behaviour through Context.set_attribute."""

    def test_set_attribute_does_not_touch_receiver(self):
        ctx0 = make_ctx()
        ctx1 = ctx0.set_attribute(USER, "ana")

        assert ctx0.get_attribute(USER) is None
        assert ctx1.get_attribute(USER) == "ana"
        assert ctx1.request is ctx0.request
        assert ctx1.response is ctx0.response

    def test_sibling_contexts_are_isolated(self):
        ctx1 = make_ctx().set_attribute(USER, "ana")
        ctx2 = ctx1.set_attribute(ROLE, "admin")
        ctx3 = ctx1.set_attribute(USER, "bob")

        assert ctx1.get_attribute(USER) == "ana"
        assert ctx1.get_attribute(ROLE) is None

        assert ctx2.get_attribute(USER) == "ana"
        assert ctx2.get_attribute(ROLE) == "admin"

        assert ctx3.get_attribute(USER) == "bob"
        assert ctx3.get_attribute(ROLE) is None

    def test_with_response_keeps_attributes(self):
        from sihttp.http import ResponseRecorder

        ctx = make_ctx().set_attribute(USER, "ana")
        other = ctx.with_response(ResponseRecorder())

        assert other.get_attribute(USER) == "ana"
        assert other.response is not ctx.response
