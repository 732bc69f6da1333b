"""Tests for RuntimeScope and the read-only ScopeView handed to handlers."""

import pytest

from stepflow.runtime.scope import RuntimeScope


def test_from_plan_scope_copies_and_overlays():
    initial = {"input": {"email": "", "role": "member"}}

    scope = RuntimeScope.from_plan_scope(initial, {"email": "ada@example.com"})
    scope.input["role"] = "admin"

    assert scope.get("input.email") == "ada@example.com"
    assert initial == {"input": {"email": "", "role": "member"}}


def test_bind_and_lookup():
    scope = RuntimeScope()
    scope.bind("user", {"_id": "u1", "tags": ["a"]})

    assert scope.get("user._id") == "u1"
    assert scope.get("user.tags.0") == "a"
    assert scope.get("user.missing", "fallback") == "fallback"
    assert scope.has("user")
    assert not scope.has("order")
    assert "user" in scope
    assert scope.keys() == ["input", "user"]


def test_input_is_reserved():
    with pytest.raises(ValueError):
        RuntimeScope().bind("input", {})


def test_view_cannot_change_scope():
    scope = RuntimeScope({"input": {"email": "ada@example.com"}})
    scope.bind("user", {"name": "Ada"})
    view = scope.view(request={"ip": "127.0.0.1"}, execution_id="exec-1", step_id="step2")

    view.get("user")["name"] = "Mallory"
    view.input["email"] = "mallory@example.com"
    view.snapshot()["user"]["name"] = "Mallory"

    assert scope.get("user.name") == "Ada"
    assert scope.get("input.email") == "ada@example.com"
    assert view.request == {"ip": "127.0.0.1"}
    assert not hasattr(view, "bind")


def test_view_render():
    scope = RuntimeScope({"input": {"name": "Ada"}})
    view = scope.view()

    assert view.render("Hello {{input.name}}") == "Hello Ada"
    assert view.render({"who": "{{input.name}}"}) == {"who": "Ada"}
