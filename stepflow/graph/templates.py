"""
Template expressions: ``{{path}}`` placeholders inside field values.

Grammar (whitespace inside the braces is ignored):

    placeholder := "{{" path "}}"
    path        := root ("." segment)*
    root        := identifier   (an input variable or an output variable)
    segment     := identifier | integer   (integers index into lists)

A field value is a *full match* when the whole string is one placeholder;
the resolved value then keeps its native type. Otherwise placeholders are
*partial* and interpolated as text.

Two passes use the same grammar:
- compile time (rewrite): qualify roots to runtime paths
  (``email`` → ``input.email``) and record which locations hold bare paths;
- run time (resolve_fields/render): look paths up in the live scope.
"""

import json
import re
from collections.abc import Callable, Iterator
from typing import Any

FULL_PATTERN = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

# A location is the key/index path from the top of a fields mapping to a value
Location = tuple[str | int, ...]


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def split_path(path: str) -> list[str]:
    return [segment.strip() for segment in path.strip().split(".")]


def root_of(path: str) -> str:
    return split_path(path)[0]


def strip_braces(value: str) -> str:
    """``"{{ email }}"`` → ``"email"``; other strings are returned stripped."""
    match = FULL_PATTERN.match(value.strip())
    return match.group(1).strip() if match else value.strip()


def is_template(value: Any) -> bool:
    return isinstance(value, str) and PLACEHOLDER_PATTERN.search(value) is not None


def iter_placeholders(value: Any, location: Location = ()) -> Iterator[tuple[Location, str]]:
    """Yield (location, path) for every placeholder in a nested value."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from iter_placeholders(item, (*location, key))
    elif isinstance(value, list):
        for i, item in enumerate(value):
            yield from iter_placeholders(item, (*location, i))
    elif isinstance(value, str):
        for match in PLACEHOLDER_PATTERN.finditer(value):
            yield location, match.group(1).strip()


# === COMPILE-TIME REWRITE ===


def rewrite(
    value: Any,
    resolve: Callable[[str, Location], str | None],
    location: Location = (),
    references: list[Location] | None = None,
) -> tuple[Any, list[Location]]:
    """
    Rewrite every placeholder in value using resolve(path, location).

    resolve returns the fully-qualified runtime path, or None to leave the
    placeholder as literal text. Full matches become the bare runtime path
    and their location is appended to the returned references; partial
    matches are rewritten in place as ``{{runtime.path}}``.
    """
    if references is None:
        references = []

    if isinstance(value, dict):
        return {
            key: rewrite(item, resolve, (*location, key), references)[0]
            for key, item in value.items()
        }, references
    if isinstance(value, list):
        return [
            rewrite(item, resolve, (*location, i), references)[0] for i, item in enumerate(value)
        ], references
    if not isinstance(value, str):
        return value, references

    full = FULL_PATTERN.match(value)
    if full:
        resolved = resolve(full.group(1).strip(), location)
        if resolved is None:
            return value, references
        references.append(location)
        return resolved, references

    def _replace(match: re.Match) -> str:
        resolved = resolve(match.group(1).strip(), location)
        return match.group(0) if resolved is None else f"{{{{{resolved}}}}}"

    return PLACEHOLDER_PATTERN.sub(_replace, value), references


# === RUN-TIME RESOLUTION ===


def lookup_path(scope: Any, path: str) -> Any:
    """
    Walk a dotted path through dicts, lists and attributes.

    Returns MISSING when any segment does not resolve.
    """
    current = scope
    for segment in split_path(path):
        if not segment:
            return MISSING
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list | tuple):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        elif current is not None and hasattr(current, segment):
            current = getattr(current, segment)
        else:
            return MISSING
    return current


def format_value(value: Any) -> str:
    """Text form of a value interpolated into a partial template."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, dict | list | bool):
        return json.dumps(value, default=str)
    return str(value)


def render(value: Any, scope: Any) -> Any:
    """
    Render every placeholder in value against scope.

    Full matches keep the native type of the resolved value; partial matches
    are interpolated as text. Paths that do not resolve stay literal.
    """
    if isinstance(value, dict):
        return {key: render(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, scope) for item in value]
    if not isinstance(value, str):
        return value

    full = FULL_PATTERN.match(value)
    if full:
        resolved = lookup_path(scope, full.group(1))
        return value if resolved is MISSING else resolved

    def _replace(match: re.Match) -> str:
        resolved = lookup_path(scope, match.group(1))
        return match.group(0) if resolved is MISSING else format_value(resolved)

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def resolve_fields(
    fields: Any,
    references: set[Location] | list[Location],
    scope: Any,
    location: Location = (),
) -> Any:
    """
    Produce the concrete field values a handler receives.

    Locations listed in references hold bare runtime paths written by the
    compiler; they are replaced by the scope value (None if absent). Every
    other string is rendered for leftover placeholders.
    """
    refs = references if isinstance(references, set) else {tuple(r) for r in references}

    if location in refs and isinstance(fields, str):
        resolved = lookup_path(scope, fields)
        return None if resolved is MISSING else resolved
    if isinstance(fields, dict):
        return {
            key: resolve_fields(item, refs, scope, (*location, key))
            for key, item in fields.items()
        }
    if isinstance(fields, list):
        return [resolve_fields(item, refs, scope, (*location, i)) for i, item in enumerate(fields)]
    return render(fields, scope)
