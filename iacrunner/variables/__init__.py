"""
Variable resolution module.
Merges scoped variables into the effective set used by a task.
"""

from .resolver import VariableResolver

__all__ = ['VariableResolver']
