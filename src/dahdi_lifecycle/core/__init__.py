"""
Core package initialization.
Contains the lifecycle state machine, command execution and host control components.
"""

from .interfaces import (
    CommandResult,
    DriftClassification,
    HostContext,
    Intent,
    LifecycleError,
    LifecyclePhase,
    PhaseOutcome,
    SpanPolicy,
)
from .command_runner import CommandRunner
from .mock_command_runner import MockCommandRunner
from .module_graph import ModuleGraph, ModuleSpec, UnitKind, default_graph
from .reconciler import ConfigReconciler, ReconciliationResult
from .orchestrator import LifecycleOrchestrator, LifecycleReport, PhaseResult

__all__ = [
    'CommandResult',
    'DriftClassification',
    'HostContext',
    'Intent',
    'LifecycleError',
    'LifecyclePhase',
    'PhaseOutcome',
    'SpanPolicy',
    'CommandRunner',
    'MockCommandRunner',
    'ModuleGraph',
    'ModuleSpec',
    'UnitKind',
    'default_graph',
    'ConfigReconciler',
    'ReconciliationResult',
    'LifecycleOrchestrator',
    'LifecycleReport',
    'PhaseResult',
]
