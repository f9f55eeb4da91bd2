"""
Redaction of NoEcho parameter values.

Values enter the registry only where they are handed to the orchestrator or the command line. Validation itself never
needs the registry, since its error messages are built without values of NoEcho parameters in the first place.
"""

import threading
from typing import Iterable, Mapping

from stackcheck.constants import MASKED_VALUE


class SecretRegistry:
    """A thread-safe set of literal values that must not appear in any rendered output."""

    def __init__(self):
        self._values: set[str] = set()
        self._mutex = threading.RLock()

    def add(self, value) -> None:
        if value is None:
            return
        if isinstance(value, (list, tuple)):
            for item in value:
                self.add(item)
            return
        value = str(value)
        if not value:
            return
        with self._mutex:
            self._values.add(value)

    def values(self) -> list[str]:
        # longest first, so that a secret containing another one is masked as a whole
        with self._mutex:
            return sorted(self._values, key=lambda v: (-len(v), v))

    def clear(self) -> None:
        with self._mutex:
            self._values.clear()

    def __contains__(self, value) -> bool:
        with self._mutex:
            return str(value) in self._values

    def __len__(self):
        with self._mutex:
            return len(self._values)


secret_values = SecretRegistry()


def redact(text: str, values: Iterable[str] = None) -> str:
    """Replace every occurrence of the given (or the registered) secret values in `text` with the mask."""
    if not text:
        return text
    values = secret_values.values() if values is None else sorted(values, key=len, reverse=True)
    for value in values:
        if value and value in text:
            text = text.replace(value, MASKED_VALUE)
    return text


def mask_parameter_values(values: Mapping[str, object], secret_names: Iterable[str]) -> dict:
    """Return a copy of `values` where the values of all `secret_names` are replaced with the mask."""
    secret_names = set(secret_names)
    return {k: (MASKED_VALUE if k in secret_names else v) for k, v in values.items()}


def register_secret_parameters(
    declarations: Mapping, supplied: Mapping[str, object], registry: SecretRegistry = None
) -> None:
    """Register the supplied values (and defaults) of all NoEcho parameters in the given declarations."""
    registry = registry if registry is not None else secret_values
    for name, declaration in declarations.items():
        if not declaration.no_echo:
            continue
        registry.add(supplied.get(name, declaration.default))
