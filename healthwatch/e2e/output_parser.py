"""Turns raw runner output into a structured RunResult.

Parsing is a strategy behind ``OutputParser`` so the coordinator does not
depend on one runner's text format.
"""

from __future__ import annotations

import re
from typing import Protocol

from .result import ResourceUsage, RunResult


GENERIC_FAILURE_MESSAGE = "Test runner execution failed. Check output for details."


class OutputParser(Protocol):
    def parse(
        self,
        output: str,
        exited_cleanly: bool,
        duration_ms: int,
        resource_usage: ResourceUsage | None = None,
    ) -> RunResult: ...


class CypressOutputParser:
    """Mocha-style summary as printed by ``cypress run``.

    Spec files come from ``Running:  <name>.cy.ts`` lines, in output order and
    with repeats kept. Counts come from the first ``N passing``,
    ``N failing`` and ``N pending`` in the output.
    """

    spec_file_re = re.compile(r"Running:\s+(.+\.cy\.[jt]sx?)")
    passing_re = re.compile(r"(\d+)\s+passing", re.IGNORECASE)
    failing_re = re.compile(r"(\d+)\s+failing", re.IGNORECASE)
    pending_re = re.compile(r"(\d+)\s+pending", re.IGNORECASE)
    error_marker = "error"

    def parse(
        self,
        output: str,
        exited_cleanly: bool,
        duration_ms: int,
        resource_usage: ResourceUsage | None = None,
    ) -> RunResult:
        text = output or ""
        spec_files = tuple(m.group(1).strip() for m in self.spec_file_re.finditer(text))

        passed = _first_count(self.passing_re, text)
        failed = _first_count(self.failing_re, text)
        skipped = _first_count(self.pending_re, text)
        total = passed + failed + skipped

        # A crashed runner prints no counters but does print error text.
        if total == 0 and self.error_marker in text.lower():
            return RunResult(
                success=False,
                duration_ms=int(duration_ms),
                spec_files=spec_files,
                output=text,
                error=GENERIC_FAILURE_MESSAGE,
            )

        return RunResult(
            success=bool(exited_cleanly) and failed == 0,
            total_tests=total,
            passed=passed,
            failed=failed,
            skipped=skipped,
            duration_ms=int(duration_ms),
            spec_files=spec_files,
            output=text,
            resource_usage=resource_usage,
        )


def _first_count(pattern: re.Pattern[str], text: str) -> int:
    m = pattern.search(text)
    return int(m.group(1)) if m else 0


_default_parser = CypressOutputParser()


def parse_output(
    output: str,
    exited_cleanly: bool,
    duration_ms: int,
    resource_usage: ResourceUsage | None = None,
) -> RunResult:
    return _default_parser.parse(output, exited_cleanly, duration_ms, resource_usage)
