from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ResourceUsage:
    max_memory_mb: float
    avg_cpu_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {"max_memory_mb": self.max_memory_mb, "avg_cpu_ms": self.avg_cpu_ms}


@dataclass(frozen=True)
class RunResult:
    """Outcome of one end-to-end runner invocation."""

    success: bool
    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    spec_files: tuple[str, ...] = field(default_factory=tuple)
    output: str = ""
    error: str | None = None
    resource_usage: ResourceUsage | None = None

    @classmethod
    def failure(cls, *, error: str, duration_ms: int, output: str = "") -> "RunResult":
        """A run that produced no counts: spawn failure or timeout."""
        return cls(success=False, duration_ms=int(duration_ms), output=output, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_tests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "spec_files": list(self.spec_files),
            "output": self.output,
            "error": self.error,
            "resource_usage": self.resource_usage.to_dict() if self.resource_usage else None,
        }
