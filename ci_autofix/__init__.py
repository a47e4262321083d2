"""Automated remediation of CI check failures on pull requests."""

__version__ = "0.1.0"
