"""Append-only audit trail and the anomaly detector that reads it."""

from __future__ import annotations

import json
import logging
import statistics
import threading
import time
import traceback
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from .models import AUDIT_SEVERITIES, AUDIT_TYPES, SEVERITY_RANK, AuditEntry
from .pii import PIITokenizer

logger = logging.getLogger(__name__)


class JsonlAuditSink:
    """Append each entry as one JSON line to ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self.failures = 0

    def write(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                self.failures += 1
                logger.warning("Failed to append audit entry to %s", self.path, exc_info=True)


class AuditLog:
    """In-memory ring of recent entries, optionally mirrored to a sink."""

    def __init__(self, capacity: int = 1000, sink: Optional[JsonlAuditSink] = None) -> None:
        self._entries: Deque[AuditEntry] = deque(maxlen=capacity)
        self.sink = sink
        self.total = 0
        self._counts: Dict[str, int] = {name: 0 for name in AUDIT_TYPES}

    def append(
        self,
        type: str,
        severity: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        if type not in AUDIT_TYPES:
            raise ValueError(f"Unknown audit type: {type}")
        if severity not in AUDIT_SEVERITIES:
            raise ValueError(f"Unknown audit severity: {severity}")
        entry = AuditEntry(
            timestamp=time.time(),
            type=type,
            severity=severity,
            message=message,
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)
        self.total += 1
        self._counts[type] += 1
        if self.sink is not None:
            self.sink.write(entry)
        return entry

    def log_execution(self, message: str, *, success: bool, **metadata: Any) -> AuditEntry:
        return self.append("execution", "info" if success else "warning", message, {"success": success, **metadata})

    def log_security(self, message: str, *, severity: str = "warning", **metadata: Any) -> AuditEntry:
        return self.append("security", severity, message, metadata)

    def log_discovery(self, message: str, **metadata: Any) -> AuditEntry:
        return self.append("discovery", "info", message, metadata)

    def log_error(self, message: str, exc: Optional[BaseException] = None, **metadata: Any) -> AuditEntry:
        if exc is not None:
            metadata.setdefault("errorKind", getattr(exc, "kind", type(exc).__name__))
            metadata["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return self.append("error", "error", message, metadata)

    def entries(self) -> List[AuditEntry]:
        return list(self._entries)

    def recent(self, n: int = 10) -> List[AuditEntry]:
        if n <= 0:
            return []
        return list(self._entries)[-n:]

    def by_type(self, type: str) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.type == type]

    def by_severity(self, severity: str) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.severity == severity]

    def for_execution(self, execution_id: str) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.metadata.get("executionId") == execution_id]

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, object]:
        by_severity = {name: 0 for name in AUDIT_SEVERITIES}
        for entry in self._entries:
            by_severity[entry.severity] += 1
        return {
            "total": self.total,
            "retained": len(self._entries),
            "byType": dict(self._counts),
            "bySeverity": by_severity,
        }

    def compliance_report(self) -> Dict[str, object]:
        """Summarise whether retained entries meet basic data-handling rules."""

        executions = self.by_type("execution")
        untokenised = [entry for entry in executions if entry.metadata.get("piiScanned") is not True]

        audited = {entry.metadata.get("executionId") for entry in executions}
        seen = {entry.metadata.get("executionId") for entry in self._entries} - {None}
        unaudited = sorted(str(execution_id) for execution_id in seen - audited)

        scanner = PIITokenizer()
        leaking = [entry for entry in self._entries if _mentions_pii(scanner, entry.metadata)]

        return {
            "gdpr": {"compliant": not untokenised, "executions": len(executions), "untokenised": len(untokenised)},
            "soc2": {"compliant": not unaudited, "executions": len(audited - {None}), "unaudited": unaudited},
            "hipaa": {"compliant": not leaking, "entriesWithPlaintextPii": len(leaking)},
        }


def _mentions_pii(scanner: PIITokenizer, value: Any) -> bool:
    if isinstance(value, str):
        return scanner.contains_pii(value)
    if isinstance(value, dict):
        return any(_mentions_pii(scanner, item) for key, item in value.items() if key != "traceback")
    if isinstance(value, (list, tuple)):
        return any(_mentions_pii(scanner, item) for item in value)
    return False


class AnomalyDetector:
    """Flag executions that look unlike the recent window."""

    def __init__(self, audit: AuditLog, *, window: int = 10, concurrency_threshold: int = 3) -> None:
        self.audit = audit
        self.window = window
        self.concurrency_threshold = concurrency_threshold
        self.detections = 0

    @staticmethod
    def _spike(samples: Sequence[float], value: float) -> bool:
        if len(samples) < 3:
            return False
        mean = statistics.fmean(samples)
        return value > mean + 3 * statistics.pstdev(samples)

    def _window(self, exclude: Optional[str]) -> List[AuditEntry]:
        # Snapshot, then compute without touching the log.
        entries = self.audit.recent(self.window)
        return [entry for entry in entries if exclude is None or entry.metadata.get("executionId") != exclude]

    def analyze(
        self,
        *,
        execution_id: Optional[str] = None,
        wrapper_hash: Optional[str] = None,
        success: bool = True,
        execution_time: float = 0.0,
        memory_used: int = 0,
        active_executions: int = 0,
    ) -> Dict[str, object]:
        window = self._window(execution_id)
        executions = [entry for entry in window if entry.type == "execution" and not entry.metadata.get("cached")]
        anomalies: List[Dict[str, object]] = []

        times = [float(entry.metadata["executionTime"]) for entry in executions if "executionTime" in entry.metadata]
        memory = [float(entry.metadata["memoryUsed"]) for entry in executions if "memoryUsed" in entry.metadata]
        if self._spike(times, execution_time):
            anomalies.append(
                {"type": "resource_spike", "metric": "executionTime", "value": execution_time, "mean": round(statistics.fmean(times), 3)}
            )
        if self._spike(memory, memory_used):
            anomalies.append(
                {"type": "resource_spike", "metric": "memoryUsed", "value": memory_used, "mean": round(statistics.fmean(memory), 3)}
            )

        if wrapper_hash and not success:
            failures = 1 + sum(
                1
                for entry in executions
                if entry.metadata.get("wrapperHash") == wrapper_hash and entry.metadata.get("success") is False
            )
            if failures >= 3:
                anomalies.append({"type": "repeated_failure", "wrapperHash": wrapper_hash, "failures": failures})

        if active_executions > self.concurrency_threshold:
            anomalies.append({"type": "unusual_timing", "activeExecutions": active_executions})

        for entry in window:
            if entry.type == "security" and entry.metadata.get("highestSeverity") == "critical":
                anomalies.append({"type": "suspicious_pattern", "message": entry.message})
                break

        level = _risk_level(anomalies)
        if anomalies:
            self.detections += len(anomalies)
            severity = "critical" if level == "critical" else "warning"
            self.audit.log_security(
                f"Anomaly detected: {', '.join(str(item['type']) for item in anomalies)}",
                severity=severity,
                executionId=execution_id,
                anomalies=anomalies,
                riskLevel=level,
            )
        return {"detected": bool(anomalies), "anomalies": anomalies, "riskLevel": level}

    def stats(self) -> Dict[str, object]:
        return {"window": self.window, "detections": self.detections}


_ANOMALY_LEVELS = {
    "resource_spike": "medium",
    "repeated_failure": "medium",
    "unusual_timing": "medium",
    "suspicious_pattern": "high",
}


def _risk_level(anomalies: Iterable[Dict[str, object]]) -> str:
    levels = [_ANOMALY_LEVELS.get(str(item["type"]), "low") for item in anomalies]
    if not levels:
        return "low"
    highest = max(levels, key=lambda name: SEVERITY_RANK[name])
    if len(levels) >= 3 and SEVERITY_RANK[highest] < SEVERITY_RANK["critical"]:
        return "critical" if highest == "high" else "high"
    return highest
