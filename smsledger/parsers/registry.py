"""Bank pattern registry: ordered bank SMS templates.

Templates are evaluated in registration order and the first one with a
matching trigger wins. Bank-specific templates therefore have to be
registered before the generic fallback; reordering changes which merchant
and date patterns get applied to a message.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from smsledger.config import Config
from smsledger.parsers.base import BankPattern, normalize_message

logger = logging.getLogger(__name__)


class BankPatternRegistry:
    """Immutable, ordered collection of BankPattern templates."""

    def __init__(self, templates: Iterable[BankPattern]):
        self._templates: tuple[BankPattern, ...] = tuple(templates)
        if not self._templates:
            raise ValueError("Bank pattern registry needs at least one template")
        for tmpl in self._templates[:-1]:
            if tmpl.is_fallback:
                raise ValueError(
                    f"Fallback template '{tmpl.name}' must be registered last"
                )
        names = [t.name for t in self._templates]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate bank template names: {names}")

    @classmethod
    def from_config(cls, config: Config) -> BankPatternRegistry:
        templates = [BankPattern.from_dict(entry) for entry in config.banks]
        logger.debug("Loaded %d bank templates", len(templates))
        return cls(templates)

    def __iter__(self) -> Iterator[BankPattern]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    @property
    def names(self) -> list[str]:
        return [t.name for t in self._templates]

    def get(self, name: str) -> BankPattern | None:
        for tmpl in self._templates:
            if tmpl.name == name:
                return tmpl
        return None

    def find_matching_template(self, text: str) -> BankPattern | None:
        """Return the first template with at least one matching trigger."""
        working = normalize_message(text)
        for tmpl in self._templates:
            if tmpl.matches(working):
                return tmpl
        return None
