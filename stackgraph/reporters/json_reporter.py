"""
JSON plan / apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import List, Optional

from stackgraph import __version__
from stackgraph.graph.builder import Graph
from stackgraph.security.resolver import ReachabilityMatrix


def build_report(
    graph: Graph,
    source_path: str,
    result=None,
    matrix: Optional[ReachabilityMatrix] = None,
    outputs: Optional[List[dict]] = None,
) -> str:
    statuses = result.statuses if result is not None else {}
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "stack": graph.name,
            "tool": "stackgraph",
            "version": __version__,
        },
        "order": list(graph.order),
        "resources": [
            {
                "id": r.id,
                "kind": r.kind.value,
                "depends_on": graph.dependencies(r.id),
                "status": statuses[r.id].value if r.id in statuses else None,
            }
            for r in graph
        ],
    }
    if result is not None:
        report["apply"] = result.to_dict()
    if matrix is not None:
        report["reachability"] = matrix.rows()
    if outputs is not None:
        report["outputs"] = outputs
    return json.dumps(report, indent=2)
