"""
Graphviz DOT rendering of scenario graphs.
"""

from __future__ import annotations

import json
from typing import List

from .graph import Bind, Call, Delay, Node, Recv, Respond, ScenarioGraph, Send
from .patterns import to_document


def _data(pattern) -> str:
    return json.dumps(to_document(pattern), sort_keys=True)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def node_label(node: Node, graph: ScenarioGraph) -> str:
    event = node.event
    if isinstance(event, Bind):
        body = f"bind\nsrc: {_data(event.src)}\ndst: {_data(event.dst)}"
    elif isinstance(event, Send):
        body = f"send '{event.type or ''}'\nfrom: {event.sender or ''}\nto: {event.target or ''}\ndata: {_data(event.src)}"
    elif isinstance(event, Recv):
        body = f"recv '{event.type or ''}'\nfrom: {event.source or ''}\nto: {event.to or ''}\ndata: {_data(event.dst)}"
        if event.timeout is not None:
            body += f"\ntimeout: {event.timeout} tick(s)"
    elif isinstance(event, Respond):
        body = f"respond to '{graph.node(event.request).name}'\nfrom: {event.sender or ''}\ndata: {_data(event.src)}"
    elif isinstance(event, Delay):
        body = f"delay {event.steps} step(s)"
    else:
        body = f"call {event.target}\nin: {len(event.inputs)} out: {len(event.outputs)}"
        for ours, theirs in event.actors + event.dummies:
            body += f"\n{ours} as {theirs}"
    if node.require is not None:
        body += f"\nrequire: {node.require.value}"
    return f"{node.name}: {body}"


def render_dot(graph: ScenarioGraph, *, include_subroutines: bool = True) -> str:
    lines: List[str] = ["digraph scenario {", "  rankdir=LR layout=dot"]
    _emit(graph, "", lines, include_subroutines)
    lines.append("}")
    return "\n".join(lines) + "\n"


def _emit(graph: ScenarioGraph, prefix: str, lines: List[str], include_subroutines: bool) -> None:
    indent = "  " * (prefix.count("/") + 1)
    for node in graph.nodes:
        key = f"{prefix}{node.name}"
        shape = "box" if isinstance(node.event, Call) else "ellipse"
        lines.append(f'{indent}"{_escape(key)}" [shape={shape} label="{_escape(node_label(node, graph))}"]')
    for node in graph.nodes:
        for succ in graph.successors[node.index]:
            lines.append(f'{indent}"{_escape(prefix + node.name)}" -> "{_escape(prefix + graph.node(succ).name)}"')
    if not include_subroutines:
        return
    for node in graph.nodes:
        if isinstance(node.event, Call):
            sub = graph.subroutines[node.event.target]
            inner = f"{prefix}{node.name}/"
            lines.append(f'{indent}subgraph "cluster_{_escape(inner)}" {{')
            lines.append(f'{indent}  label="{_escape(node.event.target)}"')
            _emit(sub, inner, lines, include_subroutines)
            lines.append(f"{indent}}}")
            for entry in sub.entry_points():
                lines.append(f'{indent}"{_escape(prefix + node.name)}" -> "{_escape(inner + sub.node(entry).name)}" [style=dashed]')
