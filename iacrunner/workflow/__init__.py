"""Task and step lifecycle."""

from .orchestrator import TaskOrchestrator, check_step_sequence, is_legal_task_transition
from .step_machine import StepStateMachine, effective_exit_code, is_legal_step_transition
from .worker import TaskWorker

__all__ = [
    'TaskOrchestrator',
    'StepStateMachine',
    'TaskWorker',
    'check_step_sequence',
    'effective_exit_code',
    'is_legal_step_transition',
    'is_legal_task_transition',
]
