"""Static checks over generated wrapper source."""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern

from .errors import ValidationFailure
from .models import SEVERITY_RANK, SecurityIssue, ValidationReport, WrapperProgram
from .risk import issue_score

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Rule:
    severity: str
    type: str
    pattern: Pattern[str]
    description: str
    suggestion: str


def _rule(severity: str, kind: str, pattern: str, description: str, suggestion: str, flags: int = 0) -> _Rule:
    return _Rule(severity, kind, re.compile(pattern, flags), description, suggestion)


RULES = (
    _rule(
        "critical",
        "dynamic_evaluation",
        r"\beval\s*\(|\bexec\s*\(|\bnew\s+Function\s*\(|\b__import__\s*\(",
        "Evaluates arbitrary strings as code",
        "Call the generated tool functions directly",
    ),
    _rule(
        "critical",
        "process_spawn",
        r"\bsubprocess\b|\bchild_process\b|\bos\.(?:system|popen|spawn\w*|exec\w*)\s*\(|\bexecSync\b|\bspawnSync\b|\bspawn\s*\(|\bPopen\s*\(",
        "Spawns an operating system process",
        "Expose the operation through an MCP tool instead",
    ),
    _rule(
        "critical",
        "filesystem_removal",
        r"\brm\s+-[a-zA-Z]*r[a-zA-Z]*f|\bshutil\.rmtree\b|\bfs\.(?:rm|rmdir)(?:Sync)?\s*\(|\brmSync\b|\bos\.removedirs\b",
        "Recursively removes files or directories",
        "Limit deletions to explicit workspace files",
    ),
    _rule(
        "critical",
        "syscall",
        r"\bctypes\b|\bptrace\b|\bsyscall\b|\bos\.fork\s*\(|\bprocess\.binding\s*\(",
        "Reaches below the language runtime into kernel interfaces",
        "Remove low-level system access",
    ),
    _rule(
        "critical",
        "credential_probe",
        r"/etc/(?:passwd|shadow|sudoers)\b|\.ssh/|\.aws/credentials|\bid_rsa\b|\.netrc\b|\.kube/config",
        "Reads credential or account files",
        "Never access credential stores from generated code",
    ),
    _rule(
        "high",
        "raw_socket",
        r"\bsocket\.socket\b|\bimport\s+socket\b|\bnet\.(?:Socket|connect|createConnection)\b|\bdgram\b|\bnew\s+WebSocket\b",
        "Opens raw network sockets outside the tool transport",
        "Route network access through an MCP tool",
    ),
    _rule(
        "high",
        "destructive_operation",
        r"\bDROP\s+(?:TABLE|DATABASE|SCHEMA|INDEX)\b|\bDELETE\s+FROM\b|\bTRUNCATE\s+TABLE\b",
        "Performs a destructive data operation",
        "Confirm the operation with a human before running it",
        re.IGNORECASE,
    ),
    _rule(
        "high",
        "destructive_operation",
        r"\.remove\s*\(|\.unlink(?:Sync)?\s*\(|\bos\.remove\s*\(",
        "Removes files or records",
        "Confirm the operation with a human before running it",
    ),
    _rule(
        "high",
        "privilege_change",
        r"\bos\.(?:setuid|setgid|seteuid|setegid|chown|chmod)\s*\(|\bprocess\.(?:setuid|setgid)\s*\(|\bsudo\s|\bfs\.(?:chmod|chown)(?:Sync)?\s*\(",
        "Modifies process or file privileges",
        "Drop privilege changes from generated code",
    ),
    _rule(
        "medium",
        "external_write",
        r"""\bopen\(\s*['"](?:/|\.\./|~)[^'"]*['"]\s*,\s*['"][^'"]*[wax+]|\b(?:writeFile|appendFile)(?:Sync)?\(\s*['"](?:/|\.\./|~)|Path\(\s*['"](?:/|\.\./|~)[^'"]*['"]\s*\)\.write_""",
        "Writes to the filesystem outside the workspace",
        "Write only to relative paths inside the workspace",
    ),
    _rule(
        "medium",
        "unbounded_loop",
        r"\bwhile\s*\(?\s*(?:True|true|1)\s*\)?\s*[:{]|\bfor\s*\(\s*;\s*;\s*\)",
        "Loops without a bounded iteration count",
        "Bound the loop or add an explicit exit condition",
    ),
    _rule(
        "medium",
        "network_call",
        r"\bfetch\s*\(|\brequests\.(?:get|post|put|delete|patch|head|request)\b|\burllib\b|\bhttp\.client\b|\bhttpx\b|\baiohttp\b|\baxios\b|\bXMLHttpRequest\b|\bhttps?\.(?:request|get)\s*\(",
        "Calls the network by name",
        "Route network access through an MCP tool",
    ),
)

NETWORK_RULE_TYPES = frozenset({"raw_socket", "network_call"})
WRITE_RULE_TYPES = frozenset({"external_write", "filesystem_removal", "destructive_operation"})

_BRANCH_PATTERN = re.compile(r"\b(?:if|elif|else|for|while|case|catch|except|and|or)\b|&&|\|\|")
_ESCAPE_PATTERN = re.compile(r"\\x[0-9a-fA-F]{2}|\\u[0-9a-fA-F]{4}|\\[0-7]{3}")
OBFUSCATION_RATIO = 0.5
OBFUSCATION_MIN_CHARS = 200
ESCAPE_THRESHOLD = 8


def _line_of(source: str, offset: int) -> int:
    return source.count("\n", 0, offset) + 1


def cyclomatic_complexity(source: str) -> int:
    return 1 + len(_BRANCH_PATTERN.findall(source))


class CodeValidator:
    """Scan wrapper source against a fixed pattern catalogue."""

    def __init__(self, complexity_threshold: int = 50) -> None:
        self.complexity_threshold = complexity_threshold

    def validate(self, wrapper: WrapperProgram) -> ValidationReport:
        return self.validate_source(wrapper.source, wrapper.dialect)

    def validate_source(self, source: str, dialect: str = "py") -> ValidationReport:
        if dialect == "py":
            try:
                ast.parse(source)
            except SyntaxError as exc:
                raise ValidationFailure(f"Generated source does not parse: {exc.msg} (line {exc.lineno})") from exc

        issues: List[SecurityIssue] = []
        for rule in RULES:
            match = rule.pattern.search(source)
            if not match:
                continue
            issues.append(
                SecurityIssue(
                    severity=rule.severity,
                    type=rule.type,
                    description=f"{rule.description}: {match.group(0).strip()!r}",
                    line=_line_of(source, match.start()),
                    suggestion=rule.suggestion,
                )
            )

        obfuscation = self._obfuscation_issue(source)
        if obfuscation:
            issues.append(obfuscation)

        complexity = cyclomatic_complexity(source)
        if complexity > self.complexity_threshold:
            issues.append(
                SecurityIssue(
                    severity="medium",
                    type="complexity",
                    description=f"Cyclomatic complexity {complexity} exceeds {self.complexity_threshold}",
                    suggestion="Bind fewer tools per wrapper",
                )
            )

        issues.sort(key=lambda issue: -SEVERITY_RANK[issue.severity])
        blocking = any(issue.severity in ("high", "critical") for issue in issues)
        report = ValidationReport(
            is_secure=not blocking,
            risk_score=issue_score(issues),
            issues=tuple(issues),
            requires_approval=blocking,
        )
        if issues:
            logger.info("Validator flagged %d issue(s), highest %s", len(issues), report.highest_severity)
        return report

    @staticmethod
    def _obfuscation_issue(source: str) -> Optional[SecurityIssue]:
        escapes = _ESCAPE_PATTERN.findall(source)
        if len(escapes) >= ESCAPE_THRESHOLD:
            return SecurityIssue(
                severity="medium",
                type="obfuscation",
                description=f"Source contains {len(escapes)} escaped character sequences",
                suggestion="Use plain literals",
            )
        visible = [char for char in source if not char.isspace()]
        if len(visible) < OBFUSCATION_MIN_CHARS:
            return None
        symbols = sum(1 for char in visible if not (char.isalnum() or char == "_"))
        ratio = symbols / len(visible)
        if ratio > OBFUSCATION_RATIO:
            return SecurityIssue(
                severity="medium",
                type="obfuscation",
                description=f"Non-alphanumeric ratio {ratio:.2f} exceeds {OBFUSCATION_RATIO}",
                suggestion="Use plain literals",
            )
        return None
