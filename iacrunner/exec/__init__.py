"""
Execution module for the runner.
Builds workspaces, renders step scripts and dispatches executions.
"""

from .request import RunTaskRequest, EnvDescriptor, StateStore, PolicyBundle
from .scripts import ScriptContext, ScriptGenerator
from .workspace import WorkspaceBuilder
from .dispatcher import ContainerCommand, ExecutionDispatcher, ExitStatus, LocalRuntime
from .retry import RetryPolicy
from .runner import TaskRunner, StepRun

__all__ = [
    "RunTaskRequest",
    "EnvDescriptor",
    "StateStore",
    "PolicyBundle",
    "ScriptContext",
    "ScriptGenerator",
    "WorkspaceBuilder",
    "ContainerCommand",
    "ExecutionDispatcher",
    "ExitStatus",
    "LocalRuntime",
    "RetryPolicy",
    "TaskRunner",
    "StepRun",
]
