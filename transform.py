"""
Request body rewriting: deny, defaults, overrides and role message upsert.

All functions mutate the parsed JSON object they are given in place. Values
copied out of rule objects are deep copies, so the compiled configuration is
never aliased into a request body.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional


def escape_pointer_token(token: str) -> str:
    """Escape a single JSON Pointer reference token (RFC 6901)."""
    return token.replace("~", "~0").replace("/", "~1")


def unescape_pointer_token(token: str) -> str:
    """Decode a single JSON Pointer reference token (RFC 6901)."""
    return token.replace("~1", "/").replace("~0", "~")


def to_pointer(path: str) -> str:
    """
    Normalize a deny path into JSON Pointer syntax.

    "/a/b" is kept as is; "a.b" becomes "/a/b" with each token escaped, so
    "x/y.z" becomes "/x~1y/z". Empty input maps to "/", which addresses
    nothing removable.
    """
    if not path:
        return "/"
    if path.startswith("/"):
        return path
    tokens = [escape_pointer_token(p) for p in path.split(".") if p]
    if not tokens:
        return "/"
    return "/" + "/".join(tokens)


def _remove_by_pointer(root: Dict[str, Any], pointer: str) -> None:
    # Only object members are removable; array indices are not honored.
    if not pointer or pointer == "/":
        return
    tokens = [unescape_pointer_token(t) for t in pointer.split("/")[1:]]
    parent: Any = root
    for key in tokens[:-1]:
        child = parent.get(key)
        if not isinstance(child, dict):
            return
        parent = child
    parent.pop(tokens[-1], None)


def apply_deny(body: Dict[str, Any], pointers: Optional[Iterable[str]]) -> None:
    """Remove every field addressed by ``pointers``; missing paths are a no-op."""
    if not isinstance(body, dict) or not pointers:
        return
    for ptr in pointers:
        _remove_by_pointer(body, ptr)


def _default_merge(target: Dict[str, Any], defaults: Mapping[str, Any]) -> None:
    for field, def_val in defaults.items():
        existing = target.get(field)
        if existing is None:
            target[field] = copy.deepcopy(def_val)
        elif isinstance(existing, dict) and isinstance(def_val, dict):
            _default_merge(existing, def_val)


def _override_merge(target: Dict[str, Any], overrides: Mapping[str, Any]) -> None:
    for field, over_val in overrides.items():
        existing = target.get(field)
        if isinstance(existing, dict) and isinstance(over_val, dict):
            _override_merge(existing, over_val)
        else:
            target[field] = copy.deepcopy(over_val)


def apply_defaults(body: Dict[str, Any], defaults: Optional[Mapping[str, Any]]) -> None:
    """
    Fill fields of ``body`` that are absent or null from ``defaults``.

    Nested objects present on both sides are merged recursively. Arrays are
    never merged element-wise: a default array is only used when the body
    has no value for that field.
    """
    if not isinstance(body, dict) or not defaults:
        return
    _default_merge(body, defaults)


def apply_overrides(body: Dict[str, Any], overrides: Optional[Mapping[str, Any]]) -> None:
    """
    Force every value of ``overrides`` into ``body``.

    Nested objects present on both sides are merged recursively; anything
    else (arrays included) replaces the body's value wholesale.
    """
    if not isinstance(body, dict) or not overrides:
        return
    _override_merge(body, overrides)


def upsert_role_messages(
    body: Dict[str, Any],
    system_text: Optional[str] = None,
    developer_text: Optional[str] = None,
) -> None:
    """
    Ensure default system/developer messages exist in ``body["messages"]``.

    A missing system message is inserted at index 0. A missing developer
    message goes right after the first system message, or at index 0 when
    there is none.
    """
    if not isinstance(body, dict):
        return
    messages = body.get("messages")
    if not isinstance(messages, list):
        return

    system_idx = -1
    has_developer = False
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role == "system" and system_idx < 0:
            system_idx = i
        elif role == "developer":
            has_developer = True

    if system_text and system_idx < 0:
        messages.insert(0, {"role": "system", "content": system_text})
        system_idx = 0

    if developer_text and not has_developer:
        messages.insert(system_idx + 1, {"role": "developer", "content": developer_text})


def transform_body(
    body: Dict[str, Any],
    *,
    model: Optional[str],
    deny: Iterable[str] = (),
    defaults: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    system_text: Optional[str] = None,
    developer_text: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Run the whole rewrite pipeline in its fixed order.

    model rewrite -> deny -> defaults -> overrides -> message upsert.
    """
    if model is not None and "model" in body:
        body["model"] = model
    apply_deny(body, list(deny))
    apply_defaults(body, defaults)
    apply_overrides(body, overrides)
    upsert_role_messages(body, system_text, developer_text)
    return body


def merge_rule_lists(*lists: Optional[Iterable[str]]) -> List[str]:
    """Concatenate deny lists in order, skipping empties."""
    out: List[str] = []
    for items in lists:
        if items:
            out.extend(items)
    return out
