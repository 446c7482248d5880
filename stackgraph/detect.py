import json
import os

import yaml

# Loader that tolerates any YAML tag (!ref and friends) without constructing
# it, so detection does not depend on references being well formed.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _is_stack(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    resources = doc.get("resources")
    return isinstance(resources, dict) and any(
        isinstance(v, dict) and "kind" in v for v in resources.values()
    )


def detect_format(filepath: str) -> str:
    """
    Return 'stack' for YAML/JSON stack definitions, otherwise 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "stack" if _is_stack(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                doc = yaml.load(fh, Loader=_TagTolerantLoader)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "stack" if _is_stack(doc) else "unknown"

    return "unknown"
