"""
Exceptions for the CI auto-fix loop.

Fixability judgments are never raised; they come back as AutoFixResult /
VerificationResult. Only environment problems surface as exceptions.
"""


class AutoFixError(Exception):
    """Base class for auto-fix errors."""


class PublishError(AutoFixError):
    """The fix change could not be published or withdrawn (branch, push, PR)."""

    def __init__(self, message: str, branch: str = None):
        super().__init__(message)
        self.branch = branch


class ConfigError(AutoFixError):
    """The auto-fix configuration is invalid."""
