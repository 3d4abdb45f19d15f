"""Core components of the control network."""

from __future__ import annotations

from .events import Event, EventBus
from .loop_scheduler import ControlLoop, LoopScheduler
from .network import ControlNetwork
from .node_registry import NetworkMetrics, Node, NodeHandle, NodeRegistry, RateLimiter
from .protocols import ProtocolRegistry
from .rule_engine import AutomationRule, RuleContext, RuleEngine
from .runtime import Cadence, ControlRuntime
from .safety import SafetyManager
from .signal_router import Signal, SignalRouter
from .sites import RemoteSite, RemoteSiteManager

__all__ = [
    "AutomationRule",
    "Cadence",
    "ControlLoop",
    "ControlNetwork",
    "ControlRuntime",
    "Event",
    "EventBus",
    "LoopScheduler",
    "NetworkMetrics",
    "Node",
    "NodeHandle",
    "NodeRegistry",
    "ProtocolRegistry",
    "RateLimiter",
    "RemoteSite",
    "RemoteSiteManager",
    "RuleContext",
    "RuleEngine",
    "SafetyManager",
    "Signal",
    "SignalRouter",
]
