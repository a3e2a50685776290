"""
Tests for request body rewriting.

Tests cover:
- JSON Pointer normalization
- Deny, defaults and overrides merge semantics
- System/developer message upsert
- Pipeline order and idempotence
"""

import copy

import pytest

from transform import (
    apply_defaults,
    apply_deny,
    apply_overrides,
    to_pointer,
    transform_body,
    upsert_role_messages,
)


class TestToPointer:
    """Test deny path normalization."""

    def test_pointer_kept(self):
        assert to_pointer("/stream_options/include_usage") == "/stream_options/include_usage"

    def test_dot_path_converted(self):
        assert to_pointer("stream_options.include_usage") == "/stream_options/include_usage"

    def test_simple_name(self):
        assert to_pointer("temperature") == "/temperature"

    def test_escaping(self):
        """Literal '~' and '/' inside dot-path tokens are escaped."""
        assert to_pointer("a~b.c/d") == "/a~0b/c~1d"

    def test_empty(self):
        assert to_pointer("") == "/"
        assert to_pointer("..") == "/"


class TestApplyDeny:
    """Test field removal by pointer."""

    def test_removes_top_level(self):
        body = {"model": "m", "temperature": 0.7}
        apply_deny(body, ["/temperature"])
        assert body == {"model": "m"}

    def test_removes_nested(self):
        body = {"stream_options": {"include_usage": True, "x": 1}}
        apply_deny(body, ["/stream_options/include_usage"])
        assert body == {"stream_options": {"x": 1}}

    def test_missing_parent_is_noop(self):
        body = {"a": {"b": 1}}
        before = copy.deepcopy(body)
        apply_deny(body, ["/x/y/z", "/a/b/c", "/missing"])
        assert body == before

    def test_non_object_intermediate_is_noop(self):
        body = {"a": [1, {"b": 2}], "s": "text"}
        before = copy.deepcopy(body)
        apply_deny(body, ["/a/1/b", "/s/len"])
        assert body == before

    def test_escaped_token(self):
        body = {"a/b": 1, "c~d": 2}
        apply_deny(body, ["/a~1b", "/c~0d"])
        assert body == {}

    def test_root_pointer_ignored(self):
        body = {"a": 1}
        apply_deny(body, ["/", ""])
        assert body == {"a": 1}


class TestApplyDefaults:
    """Test fill-if-missing merge."""

    def test_fills_absent_and_null(self):
        body = {"a": None, "keep": 1}
        apply_defaults(body, {"a": 5, "b": 6, "keep": 99})
        assert body == {"a": 5, "b": 6, "keep": 1}

    def test_recurses_into_objects(self):
        body = {"opts": {"x": 1}}
        apply_defaults(body, {"opts": {"x": 2, "y": 3}})
        assert body == {"opts": {"x": 1, "y": 3}}

    def test_arrays_not_merged(self):
        body = {"stop": ["a"]}
        apply_defaults(body, {"stop": ["b", "c"], "tags": ["t"]})
        assert body == {"stop": ["a"], "tags": ["t"]}

    def test_object_default_does_not_replace_scalar(self):
        body = {"opts": "plain"}
        apply_defaults(body, {"opts": {"x": 1}})
        assert body == {"opts": "plain"}

    def test_deep_copy(self):
        defaults = {"meta": {"tags": ["x"]}}
        body = {}
        apply_defaults(body, defaults)
        body["meta"]["tags"].append("y")
        assert defaults == {"meta": {"tags": ["x"]}}

    def test_present_values_never_change(self):
        body = {"a": 0, "b": False, "c": "", "d": [], "e": {}}
        before = copy.deepcopy(body)
        apply_defaults(body, {"a": 1, "b": True, "c": "x", "d": [1], "e": {}})
        assert body == before


class TestApplyOverrides:
    """Test force merge."""

    def test_replaces_leaves(self):
        body = {"stream": False, "temperature": 0.1}
        apply_overrides(body, {"stream": True})
        assert body == {"stream": True, "temperature": 0.1}

    def test_recurses_when_both_objects(self):
        body = {"reasoning": {"effort": "low", "summary": "auto"}}
        apply_overrides(body, {"reasoning": {"effort": "high"}})
        assert body == {"reasoning": {"effort": "high", "summary": "auto"}}

    def test_array_replaced_wholesale(self):
        body = {"stop": ["a", "b"]}
        apply_overrides(body, {"stop": ["c"]})
        assert body == {"stop": ["c"]}

    def test_object_replaces_scalar(self):
        body = {"opts": 3}
        apply_overrides(body, {"opts": {"x": 1}})
        assert body == {"opts": {"x": 1}}

    def test_every_leaf_applied(self):
        overrides = {"a": 1, "b": {"c": [1, 2], "d": None}}
        body = {"a": 0, "b": {"c": [9], "e": 5}}
        apply_overrides(body, overrides)
        assert body["a"] == 1
        assert body["b"]["c"] == [1, 2]
        assert body["b"]["d"] is None
        assert body["b"]["e"] == 5


class TestUpsertRoleMessages:
    """Test default system/developer message insertion."""

    def test_inserts_system_first(self):
        body = {"messages": [{"role": "user", "content": "hi"}]}
        upsert_role_messages(body, "sys", None)
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert body["messages"][0]["content"] == "sys"

    def test_inserts_system_and_developer(self):
        body = {"messages": [{"role": "user", "content": "hi"}]}
        upsert_role_messages(body, "sys", "dev")
        assert [m["role"] for m in body["messages"]] == ["system", "developer", "user"]

    def test_developer_without_system(self):
        body = {"messages": [{"role": "user", "content": "hi"}]}
        upsert_role_messages(body, None, "dev")
        assert [m["role"] for m in body["messages"]] == ["developer", "user"]

    def test_developer_after_existing_system(self):
        body = {
            "messages": [
                {"role": "user", "content": "a"},
                {"role": "system", "content": "mine"},
                {"role": "user", "content": "b"},
            ]
        }
        upsert_role_messages(body, "sys", "dev")
        assert [m["role"] for m in body["messages"]] == ["user", "system", "developer", "user"]
        assert body["messages"][1]["content"] == "mine"

    def test_existing_messages_kept(self):
        body = {
            "messages": [
                {"role": "system", "content": "s"},
                {"role": "developer", "content": "d"},
            ]
        }
        before = copy.deepcopy(body)
        upsert_role_messages(body, "sys", "dev")
        assert body == before

    def test_no_messages_array(self):
        body = {"prompt": "hi"}
        upsert_role_messages(body, "sys", "dev")
        assert body == {"prompt": "hi"}
        body = {"messages": "not a list"}
        upsert_role_messages(body, "sys", "dev")
        assert body == {"messages": "not a list"}


class TestTransformBody:
    """Test pipeline order."""

    def test_deny_before_defaults(self):
        """A denied field is refilled by a default since defaults run after deny."""
        body = {"model": "m", "temperature": 0.7}
        transform_body(body, model="m", deny=["/temperature"], defaults={"temperature": 0.2})
        assert body["temperature"] == 0.2

    def test_overrides_win_over_defaults(self):
        body = {"model": "m"}
        transform_body(body, model="m", defaults={"top_p": 0.5}, overrides={"top_p": 1.0})
        assert body["top_p"] == 1.0

    def test_model_rewritten(self):
        body = {"model": "gpt-4-high"}
        transform_body(body, model="gpt-4")
        assert body["model"] == "gpt-4"

    def test_model_not_added(self):
        body = {"prompt": "x"}
        transform_body(body, model="gpt-4")
        assert "model" not in body

    @pytest.mark.parametrize(
        "body",
        [
            {"model": "m", "temperature": 0.7, "opts": {"a": 1}},
            {"model": "m", "opts": None, "stop": ["x"]},
            {"model": "m", "messages": [{"role": "user", "content": "q"}]},
        ],
    )
    def test_idempotent(self, body):
        rules = dict(
            model="m",
            deny=["/temperature", "/opts/a"],
            defaults={"opts": {"b": 2}, "stop": ["d"]},
            overrides={"stream": True, "opts": {"c": 3}},
            system_text="sys",
            developer_text="dev",
        )
        once = transform_body(copy.deepcopy(body), **rules)
        twice = transform_body(copy.deepcopy(once), **rules)
        assert once == twice
