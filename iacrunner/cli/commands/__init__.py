"""CLI command handlers."""

from .render import render_script, prepare_workspace
from .steps import list_steps

__all__ = ['render_script', 'prepare_workspace', 'list_steps']
