"""
chorus: scenario execution engine for testing message-passing systems.
"""

from .errors import ChorusError, FatalBindingError, MalformedGraphError, ScenarioLoadError, TransportError
from .graph import GraphBuilder, NodeState, Requirement, ScenarioGraph
from .loader import ScenarioLoader, build_graph, load_scenario
from .matcher import MatchResult, match, resolve
from .scheduler import Scheduler, run, run_async
from .scope import UNBOUND, Scope
from .transport import LoopbackTransport, Message, Transport
from .verdict import Status, Verdict
from .version import SCENARIO_FORMAT, __version__

__all__ = [
    "ChorusError",
    "FatalBindingError",
    "GraphBuilder",
    "LoopbackTransport",
    "MalformedGraphError",
    "MatchResult",
    "Message",
    "NodeState",
    "Requirement",
    "ScenarioGraph",
    "SCENARIO_FORMAT",
    "ScenarioLoadError",
    "ScenarioLoader",
    "Scheduler",
    "Scope",
    "Status",
    "Transport",
    "TransportError",
    "UNBOUND",
    "Verdict",
    "build_graph",
    "load_scenario",
    "match",
    "resolve",
    "run",
    "run_async",
    "__version__",
]
