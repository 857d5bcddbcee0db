import pytest

from mcp_execution_engine.models import (
    SecurityIssue,
    ToolDescriptor,
    ToolParameter,
    ValidationReport,
    WrapperProgram,
)
from mcp_execution_engine.risk import RiskAssessor, level_for


def wrapper_for(*descriptors: ToolDescriptor, source: str = "x = 1\n") -> WrapperProgram:
    return WrapperProgram(source=source, dialect="py", estimated_tokens=1, descriptors=list(descriptors))


def report_with(*severities: str) -> ValidationReport:
    issues = tuple(SecurityIssue(severity=severity, type="test", description="d") for severity in severities)
    return ValidationReport(is_secure=True, risk_score=0, issues=issues, requires_approval=False)


READ = ToolDescriptor(server="fs", name="read", parameters=[ToolParameter(name="path")], category="filesystem")


@pytest.mark.parametrize(
    "score, level",
    [(0, "low"), (19, "low"), (20, "medium"), (49, "medium"), (50, "high"), (79, "high"), (80, "critical"), (100, "critical")],
)
def test_level_boundaries(score, level):
    assert level_for(score) == level


def test_read_only_single_server_is_low():
    assessment = RiskAssessor().assess(wrapper_for(READ), report_with())
    assert assessment.risk_score == 0
    assert assessment.risk_level == "low"
    assert assessment.contributing_factors == ()


def test_factors_accumulate():
    writer = ToolDescriptor(server="fs", name="write_file", category="filesystem")
    fetcher = ToolDescriptor(server="web", name="fetch", category="network")
    assessment = RiskAssessor().assess(wrapper_for(writer, fetcher), report_with("high", "medium"))
    assert assessment.risk_score == 20 + 8 + 10 + 5 + 2
    assert assessment.risk_level == "medium"
    assert any("filesystem writes" in factor for factor in assessment.contributing_factors)
    assert any("network access" in factor for factor in assessment.contributing_factors)
    assert any("additional server" in factor for factor in assessment.contributing_factors)


def test_source_writes_count_even_with_read_tools():
    wrapper = wrapper_for(READ, source="from pathlib import Path\nPath('out.txt').write_text('x')\n")
    assert RiskAssessor().assess(wrapper, report_with()).risk_score == 10


def test_score_is_capped_and_critical():
    assessment = RiskAssessor().assess(wrapper_for(READ), report_with("critical", "critical", "critical"))
    assert assessment.risk_score == 100
    assert assessment.risk_level == "critical"
    assert assessment.recommendations


def test_assessment_is_deterministic():
    wrapper = wrapper_for(READ, ToolDescriptor(server="crm", name="lookup_contact"))
    report = report_with("medium")
    first = RiskAssessor().assess(wrapper, report)
    assert all(RiskAssessor().assess(wrapper, report) == first for _ in range(5))
