"""
Pure reference resolution against applied attribute values.

Nothing here talks to a provider: given a resource and a view of the applied
state, it returns the concrete desired attributes or raises.
"""
from typing import Any, Callable, Dict, Mapping, Optional, Union

from stackgraph.errors import UnresolvedReference
from stackgraph.models.resource import Literal, Reference, Resource

AppliedView = Union[Mapping[str, Dict[str, Any]], Callable[[str], Optional[Dict[str, Any]]], Any]


def _getter(applied: AppliedView) -> Callable[[str], Optional[Dict[str, Any]]]:
    if hasattr(applied, "attributes") and callable(applied.attributes):
        return applied.attributes
    if isinstance(applied, Mapping):
        return applied.get
    return applied


def lookup(attributes: Dict[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings and lists; raises KeyError."""
    cur: Any = attributes
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit() and int(part) < len(cur):
            cur = cur[int(part)]
        else:
            raise KeyError(part)
    return cur


def resolve_reference(owner_id: str, ref: Reference, applied: AppliedView) -> Any:
    attrs = _getter(applied)(ref.resource_id)
    if attrs is None:
        raise UnresolvedReference(owner_id, str(ref), f"'{ref.resource_id}' is not applied")
    try:
        return lookup(attrs, ref.path)
    except KeyError as exc:
        raise UnresolvedReference(owner_id, str(ref), f"no attribute '{exc.args[0]}'")


def resolve_value(owner_id: str, value: Any, applied: AppliedView) -> Any:
    if isinstance(value, Reference):
        return resolve_reference(owner_id, value, applied)
    if isinstance(value, Literal):
        return value.value
    if isinstance(value, dict):
        return {k: resolve_value(owner_id, v, applied) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(owner_id, v, applied) for v in value]
    return value


def resolve_attributes(resource: Resource, applied: AppliedView) -> Dict[str, Any]:
    """Return the resource's attributes with every reference dereferenced."""
    cache: Dict[str, Optional[Dict[str, Any]]] = {}
    get = _getter(applied)

    def cached(resource_id: str) -> Optional[Dict[str, Any]]:
        if resource_id not in cache:
            cache[resource_id] = get(resource_id)
        return cache[resource_id]

    return {name: resolve_value(resource.id, v, cached) for name, v in resource.attributes.items()}
