"""
Dotted action-name globs.

Patterns are split into segments once, when a rule is loaded:

* ``*`` on its own matches every action name;
* a trailing ``*`` segment matches any non-empty remainder (``crm.*`` matches
  ``crm.deal`` and ``crm.deal.stage.update`` but not ``crm``);
* a ``*`` segment anywhere else matches exactly one segment
  (``crm.*.update`` matches ``crm.deal.update`` only).

Any other segment must match literally.
"""

from __future__ import annotations

from dataclasses import dataclass

WILDCARD = "*"
SEPARATOR = "."


@dataclass(frozen=True)
class CompiledPattern:
    source: str
    segments: tuple[str, ...]

    @property
    def is_universal(self) -> bool:
        return self.segments == (WILDCARD,)

    def matches(self, action_name: str) -> bool:
        if not action_name:
            return False
        if self.is_universal:
            return True
        parts = action_name.split(SEPARATOR)
        *head, last = self.segments
        if last == WILDCARD:
            if len(parts) <= len(head):
                return False
            return _segments_match(head, parts[: len(head)])
        if len(parts) != len(self.segments):
            return False
        return _segments_match(self.segments, parts)


def _segments_match(pattern: tuple[str, ...] | list[str], parts: list[str]) -> bool:
    return all(expected == WILDCARD or expected == actual for expected, actual in zip(pattern, parts))


def compile_pattern(pattern: str) -> CompiledPattern:
    text = (pattern or "").strip()
    if not text:
        raise ValueError("Action pattern must not be empty")
    segments = tuple(text.split(SEPARATOR))
    if any(segment == "" for segment in segments):
        raise ValueError(f"Action pattern '{pattern}' has an empty segment")
    return CompiledPattern(source=text, segments=segments)
