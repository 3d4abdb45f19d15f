"""Control network domain vocabularies and configuration schemas."""

from .enums import (
    ActionType,
    ConditionType,
    ControllerType,
    EventName,
    LoopMode,
    LoopState,
    NetworkHealth,
    NodeStatus,
    NodeType,
    Priority,
    SafetyStatus,
    SystemMode,
)
from .schemas import LoopConfig, LoopUpdate, NodeMetadata, RuleConfig, SiteConfig

__all__ = [
    "ActionType",
    "ConditionType",
    "ControllerType",
    "EventName",
    "LoopConfig",
    "LoopMode",
    "LoopState",
    "LoopUpdate",
    "NetworkHealth",
    "NodeMetadata",
    "NodeStatus",
    "NodeType",
    "Priority",
    "RuleConfig",
    "SafetyStatus",
    "SiteConfig",
    "SystemMode",
]
