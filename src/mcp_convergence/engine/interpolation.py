"""Attribute interpolation.

A string attribute value may reference another resource's attribute or output
with ``${<type>.<name>.<attribute>}``. Every such reference is an implicit
dependency edge. ``$${`` is an escaped literal ``${``; anything else that does
not match the reference grammar is plain text.

Examples:
    "${local_directory.conf.path}/motd"   -> one reference, string result
    "${memory_bucket.logs.arn}"            -> whole-value reference, raw value
    "$${HOME}"                             -> literal "${HOME}"
"""
import re
from dataclasses import replace
from typing import Any, Callable

from .errors import InterpolationError
from .schema import ResourceId

_TOKEN_RE = re.compile(
    r"\$\$\{"
    r"|\$\{(?P<type>[A-Za-z][A-Za-z0-9_]*)"
    r"\.(?P<name>[A-Za-z0-9_\-]+)"
    r"\.(?P<attr>[A-Za-z0-9_]+)\}"
)

Lookup = Callable[[ResourceId, str], Any]


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from _iter_strings(item)


def find_references(value: Any) -> set[tuple[ResourceId, str]]:
    """Collect (resource_id, attribute) references at any nesting depth."""
    refs = set()
    for text in _iter_strings(value):
        for match in _TOKEN_RE.finditer(text):
            if match.group("type") is None:
                continue  # escaped
            refs.add((
                ResourceId(match.group("type"), match.group("name")),
                match.group("attr"),
            ))
    return refs


def contains_interpolation(value: Any) -> bool:
    """Check if a value holds at least one reference."""
    return bool(find_references(value))


def _resolve_string(text: str, lookup: Lookup) -> Any:
    whole = _TOKEN_RE.fullmatch(text)
    if whole and whole.group("type") is not None:
        return _lookup(whole, lookup)

    def replace(match: re.Match) -> str:
        if match.group("type") is None:
            return "${"
        return str(_lookup(match, lookup))

    return _TOKEN_RE.sub(replace, text)


def _lookup(match: re.Match, lookup: Lookup) -> Any:
    ref = ResourceId(match.group("type"), match.group("name"))
    attr = match.group("attr")
    try:
        return lookup(ref, attr)
    except KeyError:
        raise InterpolationError(f"Cannot resolve ${{{ref}.{attr}}}") from None


def resolve(value: Any, lookup: Lookup) -> Any:
    """Return a copy of value with every reference substituted.

    Raises:
        InterpolationError: If a referenced resource or attribute is unknown
    """
    if isinstance(value, str):
        return _resolve_string(value, lookup)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve(v, lookup) for v in value)
    if isinstance(value, frozenset):
        return frozenset(resolve(v, lookup) for v in value)
    if isinstance(value, set):
        return {resolve(v, lookup) for v in value}
    return value


def state_lookup(states: dict[ResourceId, Any]) -> Lookup:
    """Lookup over a mapping of resource id to ResourceState."""
    def lookup(ref: ResourceId, attribute: str) -> Any:
        state = states.get(ref)
        if state is None:
            raise KeyError(attribute)
        return state.lookup(attribute)
    return lookup


def resolve_state(state, lookup: Lookup):
    """Copy of a stored state with its attributes resolved where possible.

    Stored attributes keep their declared form; providers need concrete
    values to find the object again. The value an attribute was applied with
    wins over resolving it now. Unresolvable references are left as-is.
    """
    if not contains_interpolation(state.attributes):
        return state

    attributes = dict(state.attributes)
    changed = False
    for name, value in state.attributes.items():
        if not contains_interpolation(value):
            continue
        if name in state.resolved:
            attributes[name] = state.resolved[name]
            changed = True
            continue
        try:
            attributes[name] = resolve(value, lookup)
            changed = True
        except InterpolationError:
            continue

    if not changed:
        return state
    return replace(state, attributes=attributes)
