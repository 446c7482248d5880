import json
import os
from typing import Any, Iterable, List, Optional

import yaml

from stackgraph.detect import detect_format
from stackgraph.errors import StackFileError
from stackgraph.models.resource import Reference, Stack


# ------------------------------------------------------------------ YAML loader
# References are written `!ref resource_id.attribute`. The tag constructor turns
# them into Reference objects so the model never sees raw strings for them.

class _StackLoader(yaml.SafeLoader):
    pass


def _ref_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Reference:
    if not isinstance(node, yaml.ScalarNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!ref expects a scalar like 'vpc.id'", node.start_mark
        )
    expr = loader.construct_scalar(node)
    try:
        return Reference.parse(expr)
    except ValueError as exc:
        raise yaml.constructor.ConstructorError(None, None, str(exc), node.start_mark)


_StackLoader.add_constructor("!ref", _ref_constructor)


def _convert_refs(val: Any) -> Any:
    """
    JSON has no tags, so references there are single-key objects:
      {"ref": "vpc.id"}  → Reference("vpc", "id")
    """
    if isinstance(val, dict):
        if set(val) == {"ref"} and isinstance(val["ref"], str):
            return Reference.parse(val["ref"])
        return {k: _convert_refs(v) for k, v in val.items()}
    if isinstance(val, list):
        return [_convert_refs(v) for v in val]
    return val


def load_document(filepath: str) -> dict:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath) as fh:
            if ext == ".json":
                doc = _convert_refs(json.load(fh))
            else:
                doc = yaml.load(fh, Loader=_StackLoader)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise StackFileError(filepath, str(exc))

    if not isinstance(doc, dict):
        raise StackFileError(filepath, "expected a mapping at the top level")
    resources = doc.get("resources")
    if not isinstance(resources, dict):
        raise StackFileError(filepath, "missing 'resources' mapping")
    return doc


def parse_file(filepath: str, stack: Optional[Stack] = None) -> Stack:
    """Declare every resource of a stack file, into `stack` when given."""
    doc = load_document(filepath)
    if stack is None:
        stack = Stack(str(doc.get("stack") or os.path.splitext(os.path.basename(filepath))[0]))

    for resource_id, definition in doc["resources"].items():
        if not isinstance(definition, dict) or "kind" not in definition:
            raise StackFileError(filepath, f"resource '{resource_id}' needs a 'kind'")
        properties = definition.get("properties", {}) or {}
        if not isinstance(properties, dict):
            raise StackFileError(filepath, f"resource '{resource_id}': 'properties' must be a mapping")
        stack.declare(definition["kind"], str(resource_id), properties)

    return stack


def parse_paths(paths: Iterable[str], name: Optional[str] = None) -> Stack:
    """Merge several stack files into one deployment; ids must be unique across them."""
    files: List[str] = []
    for p in paths:
        files.extend(_stack_files(p))
    stack: Optional[Stack] = Stack(name) if name else None
    for fp in files:
        stack = parse_file(fp, stack)
    return stack if stack is not None else Stack(name or "stack")


def _stack_files(path: str) -> List[str]:
    if os.path.isfile(path):
        return [path]
    found = []
    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "stack":
                found.append(fpath)
    return found


def parse_directory(path: str) -> Stack:
    return parse_paths([path])
