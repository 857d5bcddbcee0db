"""Replace personally identifying literals with opaque ``[KIND_n]`` placeholders."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from .models import sha256_text

PII_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("EMAIL", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("CREDIT_CARD", re.compile(r"\b(?:\d{4}[- ]?){3}\d{4}\b")),
    ("SSN", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("PHONE", re.compile(r"(?<![\w+])(?:\+\d{1,3}[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("NAME", re.compile(r"\b(?:Mr|Mrs|Ms|Dr)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?\b")),
)
_PLACEHOLDER = re.compile(r"\[(EMAIL|PHONE|NAME|SSN|CREDIT_CARD)_\d+\]")


class PIITokenizer:
    """Bidirectional literal/placeholder map scoped to one execution."""

    def __init__(self) -> None:
        self._by_hash: Dict[str, str] = {}
        self._plaintext: Dict[str, str] = {}
        self._counters: Dict[str, int] = {}

    def _placeholder_for(self, kind: str, literal: str) -> str:
        digest = sha256_text(f"{kind}:{literal}")
        existing = self._by_hash.get(digest)
        if existing:
            return existing
        count = self._counters.get(kind, 0) + 1
        self._counters[kind] = count
        placeholder = f"[{kind}_{count}]"
        self._by_hash[digest] = placeholder
        self._plaintext[placeholder] = literal
        return placeholder

    def tokenize(self, text: str) -> str:
        if not text:
            return text
        for kind, pattern in PII_PATTERNS:
            text = pattern.sub(lambda match, kind=kind: self._placeholder_for(kind, match.group(0)), text)
        return text

    def tokenize_value(self, value: Any) -> Any:
        """Tokenise every string inside a JSON-like structure."""

        if isinstance(value, str):
            return self.tokenize(value)
        if isinstance(value, dict):
            return {key: self.tokenize_value(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.tokenize_value(item) for item in value]
        return value

    def detokenize(self, text: str) -> str:
        return _PLACEHOLDER.sub(lambda match: self._plaintext.get(match.group(0), match.group(0)), text)

    def lookup(self, placeholder: str) -> Optional[str]:
        return self._plaintext.get(placeholder)

    def contains_pii(self, text: str) -> bool:
        return any(pattern.search(text or "") for _, pattern in PII_PATTERNS)

    @property
    def used(self) -> bool:
        return bool(self._plaintext)

    def plaintexts(self) -> List[str]:
        return list(self._plaintext.values())

    def tokens(self) -> List[str]:
        return list(self._plaintext)

    def counts_by_kind(self) -> Dict[str, int]:
        return dict(self._counters)

    def clear(self) -> None:
        self._by_hash.clear()
        self._plaintext.clear()
        self._counters.clear()
