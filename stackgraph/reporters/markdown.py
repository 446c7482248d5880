"""
Markdown + Mermaid plan / apply report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jinja2 import Environment

from stackgraph import __version__
from stackgraph.graph.builder import Graph
from stackgraph.models.resource import Kind, Resource
from stackgraph.models.state import Status
from stackgraph.security.resolver import ReachabilityMatrix

_STATUS_ICON = {
    "applied": "✅",
    "failed": "❌",
    "skipped": "⏭️",
    "pending": "⏳",
    "destroyed": "🗑️",
}

_STATUS_ASCII = {
    "applied": "[OK]",
    "failed": "[FAIL]",
    "skipped": "[SKIP]",
    "pending": "[..]",
    "destroyed": "[DEL]",
}

_SUBGRAPH = {
    Kind.NETWORK:         "Networking",
    Kind.NETWORK_SEGMENT: "Networking",
    Kind.SECURITY_GROUP:  "Security",
    Kind.SECURITY_RULE:   "Security",
    Kind.REPOSITORY:      "Compute",
    Kind.COMPUTE_SERVICE: "Compute",
    Kind.INSTANCE:        "Compute",
    Kind.DATA_STORE:      "Data",
    Kind.LOAD_BALANCER:   "Traffic",
    Kind.LISTENER:        "Traffic",
    Kind.TARGET_GROUP:    "Traffic",
    Kind.OUTPUT:          "Outputs",
}

_SG_ORDER = ["Networking", "Security", "Compute", "Traffic", "Data", "Outputs"]


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(r: Resource) -> str:
    """Return a Mermaid node definition string (without ID)."""
    label = f"{r.id}<br/>{r.kind.value}"
    sg = _SUBGRAPH[r.kind]
    if sg == "Data":
        return f"[({label})]"
    if sg == "Security":
        return f"{{{{{label}}}}}"
    if sg == "Outputs":
        return f"[/{label}/]"
    if r.kind == Kind.LOAD_BALANCER and r.literal("internet_facing", True):
        return f"(({label}))"
    return f"[{label}]"


def _build_mermaid(graph: Graph, statuses: Dict[str, Status]) -> str:
    subgraphs: Dict[str, List[Resource]] = defaultdict(list)
    for r in graph:
        subgraphs[_SUBGRAPH[r.kind]].append(r)

    lines = ["flowchart LR"]
    for sg_name in _SG_ORDER:
        members = subgraphs.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for r in members:
            lines.append(f"        {_sanitize_node_id(r.id)}{_node_shape(r)}")
        lines.append("    end")

    # Edges point from a resource to what it depends on
    for r in graph:
        for dep in graph.dependencies(r.id):
            lines.append(f"    {_sanitize_node_id(r.id)} --> {_sanitize_node_id(dep)}")

    colors = {
        Status.FAILED: "fill:#ff4444,color:#fff",
        Status.SKIPPED: "fill:#ffcc00,color:#000",
    }
    for rid, status in statuses.items():
        if status in colors:
            lines.append(f"    style {_sanitize_node_id(rid)} {colors[status]}")
    return "\n".join(lines)


_TEMPLATE = """\
# Stack Report: {{ stack }}

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackgraph v{{ version }}

---

## Apply Order

| # | Resource | Kind | Depends on | Status |
|---|----------|------|------------|--------|
{% for r in resources %}| {{ loop.index }} | `{{ r.id }}` | {{ r.kind }} | {{ r.depends_on }} | {{ r.status }} |
{% endfor %}
{% if failures %}
---

## Failures

{% for rid, cause in failures.items() %}- `{{ rid }}`: {{ cause }}
{% endfor %}{% endif %}{% if skipped %}
## Skipped

{% for rid, reason in skipped.items() %}- `{{ rid }}`: {{ reason }}
{% endfor %}{% endif %}{% if violations %}
## Security Violations

{% for v in violations %}- {{ v }}
{% endfor %}{% endif %}{% if reachability %}
---

## Reachability

| Rule | Source | Destination | Protocol | Port | Decision |
|------|--------|-------------|----------|------|----------|
{% for row in reachability %}| `{{ row.rule }}` | {{ row.source }} | {{ row.destination }} | {{ row.protocol }} | {{ row.port }} | {{ row.decision }} |
{% endfor %}
Anything not listed is denied.
{% endif %}{% if outputs %}
---

## Outputs

| Name | Source | Value |
|------|--------|-------|
{% for o in outputs %}| {{ o.name }} | `{{ o.source }}` | {{ o.value if o.value is not none else "_unresolved_" }} |
{% endfor %}{% endif %}
---

## Dependency Diagram

```mermaid
{{ mermaid }}
```
"""


def build_report(
    graph: Graph,
    source_path: str,
    result=None,
    matrix: Optional[ReachabilityMatrix] = None,
    outputs: Optional[List[dict]] = None,
    ascii_mode: bool = False,
) -> str:
    statuses = result.statuses if result is not None else {}
    icons = _STATUS_ASCII if ascii_mode else _STATUS_ICON
    resources = [
        {
            "id": r.id,
            "kind": r.kind.value,
            "depends_on": ", ".join(f"`{d}`" for d in graph.dependencies(r.id)) or "-",
            "status": f"{icons[statuses[r.id].value]} {statuses[r.id].value}" if r.id in statuses else "planned",
        }
        for r in graph
    ]

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        stack=graph.name,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        resources=resources,
        failures={rid: str(f.cause) for rid, f in result.failures.items()} if result else {},
        skipped=result.skipped if result else {},
        violations=[str(v) for v in result.violations] if result else [],
        reachability=matrix.rows() if matrix is not None else [],
        outputs=outputs or [],
        mermaid=_build_mermaid(graph, statuses),
    )
