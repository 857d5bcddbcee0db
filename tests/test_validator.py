import textwrap
import unittest

from mcp_execution_engine.errors import ValidationFailure
from mcp_execution_engine.generator import CodeGenerator
from mcp_execution_engine.models import ToolDescriptor, ToolParameter
from mcp_execution_engine.validator import CodeValidator, cyclomatic_complexity


def source(body: str) -> str:
    return textwrap.dedent(body).lstrip()


class CodeValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = CodeValidator()

    def test_generated_wrapper_is_clean(self) -> None:
        descriptor = ToolDescriptor(
            server="fs",
            name="read",
            description="Read a file",
            parameters=[ToolParameter(name="path")],
        )
        for dialect in ("py", "ts"):
            wrapper = CodeGenerator().generate([descriptor], "read README.md", dialect)
            report = self.validator.validate(wrapper)
            self.assertTrue(report.is_secure, report.issues)
            self.assertEqual(report.issues, ())
            self.assertEqual(report.risk_score, 0)

    def test_dynamic_evaluation_is_critical_with_line(self) -> None:
        report = self.validator.validate_source(source("""
            x = 1
            eval("x + 1")
        """))
        self.assertFalse(report.is_secure)
        self.assertTrue(report.requires_approval)
        issue = report.issues[0]
        self.assertEqual((issue.severity, issue.type, issue.line), ("critical", "dynamic_evaluation", 2))
        self.assertTrue(issue.suggestion)

    def test_destructive_sql_is_high(self) -> None:
        report = self.validator.validate_source('query = "DELETE FROM users WHERE 1=1"\n')
        self.assertEqual(report.highest_severity, "high")
        self.assertEqual(report.issues[0].type, "destructive_operation")

    def test_medium_findings_do_not_block(self) -> None:
        report = self.validator.validate_source(source("""
            import urllib.request
            count = 0
            while True:
                count += 1
                if count > 3:
                    break
        """))
        types = {issue.type for issue in report.issues}
        self.assertEqual(types, {"network_call", "unbounded_loop"})
        self.assertTrue(report.is_secure)
        self.assertFalse(report.requires_approval)
        self.assertEqual(report.risk_score, 16)

    def test_issues_sorted_most_severe_first(self) -> None:
        report = self.validator.validate_source(source("""
            import subprocess
            import socket
            while True:
                break
        """))
        severities = [issue.severity for issue in report.issues]
        self.assertEqual(severities, sorted(severities, key=["critical", "high", "medium", "low"].index))
        self.assertEqual(severities[0], "critical")

    def test_escaped_literals_flag_obfuscation(self) -> None:
        report = self.validator.validate_source('payload = "' + "\\x41" * 10 + '"\n')
        self.assertEqual([issue.type for issue in report.issues], ["obfuscation"])

    def test_complexity_threshold(self) -> None:
        branches = "\n".join(f"if value == {index}:\n    value += 1" for index in range(6))
        body = "value = 0\n" + branches + "\n"
        self.assertEqual(cyclomatic_complexity(body), 7)
        report = CodeValidator(complexity_threshold=5).validate_source(body)
        self.assertEqual([issue.type for issue in report.issues], ["complexity"])

    def test_unparsable_python_raises(self) -> None:
        with self.assertRaises(ValidationFailure):
            self.validator.validate_source("def broken(:\n")

    def test_typescript_is_not_parsed_as_python(self) -> None:
        report = self.validator.validate_source("const child = require('child_process');\n", "ts")
        self.assertEqual(report.issues[0].type, "process_spawn")


if __name__ == "__main__":
    unittest.main()
