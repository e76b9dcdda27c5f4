"""Supervised execution of the external end-to-end test runner."""

from .output_parser import CypressOutputParser, OutputParser, parse_output
from .process_registry import ProcessRegistry, SupervisedProcess
from .resource_monitor import ResourceMonitor, ResourceSample
from .runner import E2ERunner, ResourceUsage, RunResult

__all__ = [
    "CypressOutputParser",
    "E2ERunner",
    "OutputParser",
    "ProcessRegistry",
    "ResourceMonitor",
    "ResourceSample",
    "ResourceUsage",
    "RunResult",
    "SupervisedProcess",
    "parse_output",
]
