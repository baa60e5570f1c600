"""
infra-agent runtime core.

Reconciles the proxy configuration, reports health, ships the journal
and updates the agent in place.
"""

from .agent import AgentRuntime
from .heartbeat import Heartbeater
from .reconciler import ConfigReconciler
from .sender import ControlPlaneClient, LogStream
from .state import AgentState, ReconciliationResult
from .updater import SelfUpdater

__all__ = [
    "AgentRuntime",
    "Heartbeater",
    "ConfigReconciler",
    "ControlPlaneClient",
    "LogStream",
    "AgentState",
    "ReconciliationResult",
    "SelfUpdater",
]
