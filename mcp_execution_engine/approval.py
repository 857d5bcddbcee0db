"""Approval gate: turns risky wrappers into human-review requests."""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import PolicyViolation
from .models import (
    APPROVAL_MODES,
    SEVERITY_RANK,
    ApprovalImpact,
    ApprovalOptions,
    ApprovalRequest,
    RiskAssessment,
    ValidationReport,
    WrapperProgram,
)
from .pii import PIITokenizer
from .risk import reaches_network
from .schema import tokenize

logger = logging.getLogger(__name__)

SUMMARY_PREFIX_CHARS = 200
DEFAULT_MAX_AGE = 24 * 3600

_PATH_LITERAL = re.compile(r"""['"]((?:\.{0,2}/|~/)?[\w.-]+(?:/[\w.-]+)*\.[A-Za-z0-9]{1,8}|/[\w.-]+(?:/[\w.-]+)+)['"]""")
_URL_LITERAL = re.compile(r"""https?://[^\s'"<>)]+""")
_DESTRUCTIVE_TYPES = frozenset({"destructive_operation", "filesystem_removal"})
_DESTRUCTIVE_TOOL_WORDS = frozenset({"delete", "remove", "drop", "truncate", "destroy", "purge", "wipe"})


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    level: str
    reason: str


def effective_level(assessment: RiskAssessment, report: ValidationReport) -> str:
    """The stricter of the risk level and the worst validation issue."""

    level = assessment.risk_level
    worst = report.highest_severity
    if worst and SEVERITY_RANK[worst] > SEVERITY_RANK[level]:
        return worst
    return level


def should_block(level: str, mode: str, auto_approve_high: bool = False) -> bool:
    if level == "critical":
        return True
    if level == "high":
        if mode == "strict":
            return True
        return not (auto_approve_high or mode == "permissive")
    if level == "medium":
        return mode == "strict"
    return False


class ApprovalGate:
    """Consult policy and keep pending approval requests in memory."""

    def __init__(self, mode: str = "balanced", *, max_age: float = DEFAULT_MAX_AGE) -> None:
        if mode not in APPROVAL_MODES:
            raise PolicyViolation(f"Unknown approval mode: {mode}")
        self.mode = mode
        self.max_age = max_age
        self._requests: Dict[str, ApprovalRequest] = {}

    def evaluate(
        self,
        assessment: RiskAssessment,
        report: ValidationReport,
        options: Optional[ApprovalOptions] = None,
    ) -> GateDecision:
        mode = (options.mode if options and options.mode else self.mode)
        if mode not in APPROVAL_MODES:
            raise PolicyViolation(f"Unknown approval mode: {mode}")
        auto_high = bool(options and options.auto_approve_high)
        level = effective_level(assessment, report)
        blocked = should_block(level, mode, auto_high)
        if blocked:
            reason = f"{level} risk blocked in {mode} mode"
        else:
            reason = f"{level} risk allowed in {mode} mode"
        return GateDecision(allowed=not blocked, level=level, reason=reason)

    def create_request(
        self,
        wrapper: WrapperProgram,
        assessment: RiskAssessment,
        report: ValidationReport,
        tokenizer: Optional[PIITokenizer] = None,
    ) -> ApprovalRequest:
        """Record a pending request; literals are tokenised before they are stored."""

        tokenizer = tokenizer or PIITokenizer()
        now = time.time()
        request_id = f"approval-{int(now * 1000)}-{secrets.token_hex(4)}"
        lines = [tokenizer.tokenize(wrapper.source)[:SUMMARY_PREFIX_CHARS]]
        for issue in report.issues:
            where = f" (line {issue.line})" if issue.line else ""
            lines.append(tokenizer.tokenize(f"- [{issue.severity}] {issue.type}: {issue.description}{where}"))
        impact = inspect_impact(wrapper, report)
        request = ApprovalRequest(
            id=request_id,
            created_at=now,
            wrapper_hash=wrapper.sha,
            risk_assessment=assessment,
            summary="\n".join(lines),
            impact=ApprovalImpact(
                files_touched=tuple(tokenizer.tokenize(path) for path in impact.files_touched),
                network_reached=tuple(tokenizer.tokenize(url) for url in impact.network_reached),
                destructive_ops=tuple(tokenizer.tokenize(op) for op in impact.destructive_ops),
                reversible=impact.reversible,
            ),
        )
        self._requests[request_id] = request
        logger.info("Created approval request %s (%s risk)", request_id, assessment.risk_level)
        return request

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    def pending(self) -> List[ApprovalRequest]:
        return [request for request in self._requests.values() if request.status == "pending"]

    def approve(self, request_id: str) -> ApprovalRequest:
        return self._settle(request_id, "approved", None)

    def reject(self, request_id: str, reason: str = "") -> ApprovalRequest:
        return self._settle(request_id, "rejected", reason or None)

    def _settle(self, request_id: str, status: str, reason: Optional[str]) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise KeyError(f"Unknown approval request: {request_id}")
        if request.status != "pending":
            raise PolicyViolation(f"Approval request {request_id} is already {request.status}")
        request.status = status
        request.reason = reason
        return request

    def cleanup(self, max_age: Optional[float] = None) -> int:
        cutoff = time.time() - (self.max_age if max_age is None else max_age)
        stale = [key for key, request in self._requests.items() if request.created_at < cutoff]
        for key in stale:
            del self._requests[key]
        return len(stale)

    def stats(self) -> Dict[str, int]:
        counts = {"pending": 0, "approved": 0, "rejected": 0}
        for request in self._requests.values():
            counts[request.status] = counts.get(request.status, 0) + 1
        counts["total"] = len(self._requests)
        return counts


def inspect_impact(wrapper: WrapperProgram, report: ValidationReport) -> ApprovalImpact:
    """Derive the impact of a wrapper from its source, never by running it."""

    files = list(dict.fromkeys(match.group(1) for match in _PATH_LITERAL.finditer(wrapper.source)))
    urls = list(dict.fromkeys(_URL_LITERAL.findall(wrapper.source)))
    if not urls and reaches_network(wrapper.source, wrapper.descriptors):
        urls = [descriptor.qualified_name for descriptor in wrapper.descriptors if descriptor.category == "network"]

    destructive = [issue.description for issue in report.issues if issue.type in _DESTRUCTIVE_TYPES]
    for descriptor in wrapper.descriptors:
        if _DESTRUCTIVE_TOOL_WORDS.intersection(tokenize(descriptor.name)):
            destructive.append(f"tool {descriptor.qualified_name}")
    return ApprovalImpact(
        files_touched=tuple(files),
        network_reached=tuple(urls),
        destructive_ops=tuple(destructive),
        reversible=not destructive,
    )


def format_request(request: ApprovalRequest) -> str:
    assessment = request.risk_assessment
    impact = request.impact
    lines = [
        f"Approval request {request.id} ({request.status})",
        f"Risk: {assessment.risk_level} ({assessment.risk_score}/100)",
        f"Wrapper: {request.wrapper_hash[:12]}",
    ]
    if assessment.contributing_factors:
        lines.append("Factors: " + "; ".join(assessment.contributing_factors))
    if impact.files_touched:
        lines.append("Files: " + ", ".join(impact.files_touched))
    if impact.network_reached:
        lines.append("Network: " + ", ".join(impact.network_reached))
    if impact.destructive_ops:
        lines.append("Destructive: " + "; ".join(impact.destructive_ops))
    lines.append(f"Reversible: {'yes' if impact.reversible else 'no'}")
    lines.append("")
    lines.append(request.summary)
    return "\n".join(lines)
