"""
Output export: the flat name -> string mapping consumed by other systems.
"""
import json
from typing import Any, Dict, List

from stackgraph.engine.resolve import lookup
from stackgraph.errors import OutputUnresolved
from stackgraph.graph.builder import export_names


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _resolve(result, output_id: str) -> Any:
    output = result.graph[output_id]
    ref = output.reference("value")
    attrs = result.store.attributes(ref.resource_id)
    if attrs is None:
        raise OutputUnresolved(output_id, ref.resource_id)
    try:
        return lookup(attrs, ref.path)
    except KeyError:
        raise OutputUnresolved(output_id, str(ref))


def collect(result) -> Dict[str, str]:
    """
    Resolve every Output against the applied state of its source resource.

    Raises DuplicateExportName on a name collision and OutputUnresolved when
    a source did not reach the applied state in this pass.
    """
    names = export_names(result.graph)
    return {name: _stringify(_resolve(result, oid)) for name, oid in names.items()}


def describe(result) -> List[dict]:
    """Output rows for reports; unresolved outputs carry value None."""
    rows = []
    for name, oid in export_names(result.graph).items():
        output = result.graph[oid]
        try:
            value = _stringify(_resolve(result, oid))
        except OutputUnresolved:
            value = None
        rows.append({
            "name": name,
            "output": oid,
            "source": str(output.reference("value")),
            "description": output.literal("description") or "",
            "value": value,
        })
    return rows
