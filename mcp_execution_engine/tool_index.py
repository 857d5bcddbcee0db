"""In-memory catalogue of tool descriptors with weighted intent ranking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .models import ToolDescriptor
from .schema import extract_keywords, tokenize

logger = logging.getLogger(__name__)

FIELD_WEIGHTS = (
    ("description", 0.45),
    ("name", 0.25),
    ("category", 0.20),
    ("keywords", 0.10),
)
_MIN_REVERSE_MATCH = 4


@dataclass(frozen=True)
class _IndexedField:
    text: str
    tokens: FrozenSet[str]


@dataclass(frozen=True)
class _IndexEntry:
    descriptor: ToolDescriptor
    priority: int
    fields: Tuple[Tuple[_IndexedField, float], ...]


def _indexed(text: str) -> _IndexedField:
    lowered = (text or "").lower()
    return _IndexedField(text=lowered, tokens=frozenset(tokenize(lowered)))


def _field_score(terms: List[str], field: _IndexedField) -> float:
    if not terms or not field.text:
        return 0.0
    overlap = sum(1 for term in terms if term in field.tokens)
    substring = 0
    for term in terms:
        if term in field.text:
            substring += 1
        elif any(len(token) >= _MIN_REVERSE_MATCH and token in term for token in field.tokens):
            substring += 1
    return (overlap + substring) / (2 * len(terms))


class ToolIndex:
    """Rank tool descriptors against a natural-language intent."""

    def __init__(self, priorities: Optional[Mapping[str, int]] = None) -> None:
        self._priorities: Dict[str, int] = dict(priorities or {})
        self._by_server: Dict[str, List[ToolDescriptor]] = {}
        self._entries: List[_IndexEntry] = []
        self._rebuilds = 0

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[ToolDescriptor],
        priorities: Optional[Mapping[str, int]] = None,
    ) -> "ToolIndex":
        index = cls(priorities)
        grouped: Dict[str, List[ToolDescriptor]] = {}
        for descriptor in descriptors:
            grouped.setdefault(descriptor.server, []).append(descriptor)
        index.rebuild(grouped)
        return index

    def set_priority(self, server: str, priority: int) -> None:
        self._priorities[server] = priority

    def rebuild(self, catalogue: Mapping[str, Iterable[ToolDescriptor]]) -> None:
        """Replace the whole catalogue and recompute every entry."""

        self._by_server = {server: list(tools) for server, tools in catalogue.items()}
        self._reindex()

    def replace_server(self, server: str, descriptors: Iterable[ToolDescriptor]) -> None:
        by_server = dict(self._by_server)
        by_server[server] = list(descriptors)
        self.rebuild(by_server)

    def remove_server(self, server: str) -> None:
        by_server = {name: tools for name, tools in self._by_server.items() if name != server}
        self.rebuild(by_server)

    def _reindex(self) -> None:
        entries: List[_IndexEntry] = []
        for server in sorted(self._by_server):
            priority = self._priorities.get(server, 0)
            for descriptor in self._by_server[server]:
                fields = {
                    "description": _indexed(descriptor.description),
                    "name": _indexed(descriptor.name),
                    "category": _indexed(descriptor.category or ""),
                    "keywords": _indexed(" ".join(descriptor.keywords)),
                }
                entries.append(
                    _IndexEntry(
                        descriptor=descriptor,
                        priority=priority,
                        fields=tuple((fields[name], weight) for name, weight in FIELD_WEIGHTS),
                    )
                )
        self._entries = entries
        self._rebuilds += 1
        logger.debug("Rebuilt tool index with %d tools", len(entries))

    def score(self, intent: str, descriptor: ToolDescriptor) -> float:
        terms = extract_keywords(intent)
        for entry in self._entries:
            if entry.descriptor is descriptor:
                return self._score_entry(terms, entry)
        return 0.0

    @staticmethod
    def _score_entry(terms: List[str], entry: _IndexEntry) -> float:
        total = sum(weight * _field_score(terms, field) for field, weight in entry.fields)
        return round(total, 6)

    def search(self, intent: str, k: int = 5) -> List[ToolDescriptor]:
        """Return up to ``k`` descriptors with a non-zero score, best first."""

        terms = extract_keywords(intent)
        if not terms or k <= 0:
            return []
        scored: List[Tuple[float, _IndexEntry]] = []
        for entry in self._entries:
            value = self._score_entry(terms, entry)
            if value > 0:
                scored.append((value, entry))
        scored.sort(key=lambda item: (-item[0], -item[1].priority, item[1].descriptor.sort_key))
        return [entry.descriptor for _, entry in scored[:k]]

    def descriptors(self) -> List[ToolDescriptor]:
        return [entry.descriptor for entry in self._entries]

    def servers(self) -> List[str]:
        return sorted(self._by_server)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, object]:
        return {
            "tools": len(self._entries),
            "servers": len(self._by_server),
            "perServer": {server: len(tools) for server, tools in sorted(self._by_server.items())},
            "rebuilds": self._rebuilds,
        }
