"""
Variable inheritance and decryption.

Variables are declared at org, template, project and env scope. The
effective set for a task merges them in that order, a narrower scope
overriding a broader one for the same (type, name) key.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set

from ..exceptions import ConfigurationError, SecretError
from ..models import Variable, VariableScope, VariableType
from ..security.secrets import SecretCipher, SecretsMasker

logger = logging.getLogger(__name__)

_SCOPE_ORDER = {scope: i for i, scope in enumerate(VariableScope)}
_TYPE_ORDER = {typ: i for i, typ in enumerate(VariableType)}


class VariableResolver:
    """
    Produces the resolved variable set of a task.

    Resolution never mutates the input records: the result is a list of
    copies, which is what a task snapshots at creation time.
    """

    def __init__(self, cipher: Optional[SecretCipher] = None, masker: Optional[SecretsMasker] = None):
        self.cipher = cipher or SecretCipher()
        self.masker = masker

    def resolve(
        self,
        variables: Iterable[Variable],
        types: Optional[Iterable[VariableType]] = None,
        decrypt: bool = True,
    ) -> List[Variable]:
        """
        Merge variables across scopes.

        Args:
            variables: Variables from every scope applicable to the environment
            types: Only keep variables of these types (default: all)
            decrypt: Decrypt encrypted values; one failure fails the whole call

        Returns:
            Effective variables ordered by (type, name)

        Raises:
            ConfigurationError: Two variables share scope, type and name
            SecretError: A value could not be decrypted
        """
        wanted: Optional[Set[VariableType]] = None
        if types is not None:
            wanted = {VariableType.parse(t) for t in types}

        ordered = sorted(variables, key=lambda v: _SCOPE_ORDER[v.scope])

        seen = set()
        merged: Dict[tuple, Variable] = {}
        for variable in ordered:
            unique_key = (variable.scope, variable.type, variable.name)
            if unique_key in seen:
                raise ConfigurationError(
                    f"duplicate {variable.type.value} variable '{variable.name}' "
                    f"in scope '{variable.scope.value}'",
                    {"scope": variable.scope.value, "type": variable.type.value, "name": variable.name},
                )
            seen.add(unique_key)

            if wanted is not None and variable.type not in wanted:
                continue
            merged[variable.key] = variable

        result = [
            replace(v) for v in sorted(merged.values(), key=lambda v: (_TYPE_ORDER[v.type], v.name))
        ]
        if decrypt:
            result = self.decrypt(result)
        return result

    def decrypt(self, variables: List[Variable]) -> List[Variable]:
        """Return copies with every encrypted value decrypted."""
        decrypted = []
        for variable in variables:
            try:
                value = self.cipher.decrypt_var(variable.value)
            except SecretError as e:
                raise SecretError(
                    f"decrypt variable '{variable.name}': {e.message}",
                    {"name": variable.name, "type": variable.type.value},
                ) from e
            if self.masker is not None and (variable.sensitive or value != variable.value):
                self.masker.register(value)
            decrypted.append(replace(variable, value=value))
        logger.debug("Resolved %d variables", len(decrypted))
        return decrypted

    def decrypt_map(self, values: Dict[str, str]) -> Dict[str, str]:
        """Decrypt a name -> value mapping as carried by a run request."""
        result = {}
        for name in sorted(values):
            try:
                plain = self.cipher.decrypt_var(values[name])
            except SecretError as e:
                raise SecretError(f"decrypt variable '{name}': {e.message}", {"name": name}) from e
            if self.masker is not None and plain != values[name]:
                self.masker.register(plain)
            result[name] = plain
        return result

    @staticmethod
    def group_by_type(variables: Iterable[Variable]) -> Dict[VariableType, Dict[str, str]]:
        grouped: Dict[VariableType, Dict[str, str]] = {typ: {} for typ in VariableType}
        for variable in variables:
            grouped[variable.type][variable.name] = variable.value
        return grouped
