"""``${VAR}`` references in settings values.

``${VAR}`` requires the variable; ``${VAR:default}`` and ``${VAR:-default}``
fall back to ``default``. A value that consists of a single reference is
converted to bool, int or float when the resolved text parses as one; a
reference embedded in other text always yields a string. Mapping keys are
left alone.
"""

import os
import re
from typing import Any, List, Mapping

from franz_common.exceptions import ConfigurationError

REFERENCE = re.compile(r"\$\{(?P<name>[^}:]+)(?::-?(?P<default>[^}]*))?\}")

_BOOLEANS = {"true": True, "yes": True, "false": False, "no": False}


def _coerce(text: str) -> Any:
    if text.lower() in _BOOLEANS:
        return _BOOLEANS[text.lower()]
    for parse in (int, float):
        try:
            return parse(text)
        except ValueError:
            continue
    return text


class VariableSubstitution:
    """Resolves references against ``environ`` (``os.environ`` by default)."""

    VAR_PATTERN = REFERENCE

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = os.environ if environ is None else environ

    def resolve(self, match: re.Match) -> str:
        """Text for one reference.

        Raises:
            ConfigurationError: The variable is unset and has no default
        """
        name, default = match.group("name"), match.group("default")
        if name in self._environ:
            return self._environ[name]
        if default is None:
            raise ConfigurationError(
                f"Environment variable '{name}' not found",
                context={"variable": name},
            )
        return default

    def substitute(self, value: Any) -> Any:
        """Resolve every reference in a string, list or dict, recursively."""
        if isinstance(value, dict):
            return {key: self.substitute(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.substitute(item) for item in value]
        if not isinstance(value, str):
            return value

        whole = REFERENCE.fullmatch(value)
        if whole is not None:
            return _coerce(self.resolve(whole))
        return REFERENCE.sub(self.resolve, value)

    def has_variables(self, value: Any) -> bool:
        if isinstance(value, str):
            return REFERENCE.search(value) is not None
        if isinstance(value, dict):
            value = list(value.values())
        if isinstance(value, list):
            return any(self.has_variables(item) for item in value)
        return False


def substitute_env_vars(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    return VariableSubstitution(environ).substitute(value)


__all__: List[str] = ["VariableSubstitution", "substitute_env_vars"]
