"""Replication core: event routing and the engine loop."""

from streamcouch.core.engine import EngineState, ReplicationEngine, ReplicationStats
from streamcouch.core.router import Action, RoutingConfig, RoutingDecision, route

__all__ = [
    "ReplicationEngine",
    "ReplicationStats",
    "EngineState",
    "Action",
    "RoutingConfig",
    "RoutingDecision",
    "route",
]
