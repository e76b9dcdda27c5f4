"""Project health dashboard with supervised end-to-end test execution."""

__version__ = "0.1.0"
