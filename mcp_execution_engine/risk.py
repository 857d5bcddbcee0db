"""Deterministic risk scoring for generated wrappers."""

from __future__ import annotations

import re
from typing import Iterable, List

from .models import RiskAssessment, SecurityIssue, ToolDescriptor, ValidationReport, WrapperProgram
from .schema import tokenize

ISSUE_WEIGHTS = (("critical", 40), ("high", 20), ("medium", 8), ("low", 2))
FILESYSTEM_WRITE_BONUS = 10
NETWORK_BONUS = 5
EXTRA_SERVER_BONUS = 2
MAX_SCORE = 100

_WRITE_SOURCE = re.compile(
    r"\.write_(?:text|bytes)\s*\(|\b(?:writeFile|appendFile|mkdir)(?:Sync)?\s*\(|\bopen\([^)]*['\"][wax]\+?['\"]"
)
_NETWORK_SOURCE = re.compile(
    r"\bfetch\s*\(|\brequests\.|\burllib\b|\bhttp\.client\b|\bhttpx\b|\baiohttp\b|\baxios\b|\bsocket\b|\bWebSocket\b"
)
_WRITE_TOOL_WORDS = frozenset(
    {"write", "create", "delete", "remove", "move", "rename", "mkdir", "update", "edit", "put", "append", "save"}
)
_NETWORK_TOOL_WORDS = frozenset({"fetch", "http", "https", "url", "download", "request", "web", "browse"})

_RECOMMENDATIONS = {
    "low": (),
    "medium": ("Review the generated wrapper before relying on its output",),
    "high": (
        "Run in the container backend",
        "Require human approval before execution",
    ),
    "critical": ("Do not execute; rewrite the intent to avoid the flagged operations",),
}


def issue_score(issues: Iterable[SecurityIssue]) -> int:
    weights = dict(ISSUE_WEIGHTS)
    return min(MAX_SCORE, sum(weights.get(issue.severity, 0) for issue in issues))


def level_for(score: int) -> str:
    if score < 20:
        return "low"
    if score < 50:
        return "medium"
    if score < 80:
        return "high"
    return "critical"


def writes_filesystem(source: str, descriptors: Iterable[ToolDescriptor]) -> bool:
    if _WRITE_SOURCE.search(source):
        return True
    return any(_WRITE_TOOL_WORDS.intersection(tokenize(descriptor.name)) for descriptor in descriptors)


def reaches_network(source: str, descriptors: Iterable[ToolDescriptor]) -> bool:
    if _NETWORK_SOURCE.search(source):
        return True
    for descriptor in descriptors:
        if descriptor.category == "network":
            return True
        if _NETWORK_TOOL_WORDS.intersection(tokenize(descriptor.name)):
            return True
    return False


class RiskAssessor:
    """Pure function of the wrapper and its validation report."""

    def assess(self, wrapper: WrapperProgram, report: ValidationReport) -> RiskAssessment:
        score = 0
        factors: List[str] = []

        for severity, weight in ISSUE_WEIGHTS:
            count = sum(1 for issue in report.issues if issue.severity == severity)
            if count:
                score += weight * count
                factors.append(f"{count} {severity} issue(s) (+{weight * count})")

        if writes_filesystem(wrapper.source, wrapper.descriptors):
            score += FILESYSTEM_WRITE_BONUS
            factors.append(f"filesystem writes (+{FILESYSTEM_WRITE_BONUS})")

        if reaches_network(wrapper.source, wrapper.descriptors):
            score += NETWORK_BONUS
            factors.append(f"network access (+{NETWORK_BONUS})")

        extra_servers = max(0, len(wrapper.servers) - 1)
        if extra_servers:
            score += EXTRA_SERVER_BONUS * extra_servers
            factors.append(f"{extra_servers} additional server(s) (+{EXTRA_SERVER_BONUS * extra_servers})")

        score = min(MAX_SCORE, score)
        level = level_for(score)
        return RiskAssessment(
            risk_score=score,
            risk_level=level,
            contributing_factors=tuple(factors),
            recommendations=_RECOMMENDATIONS[level],
        )
