"""Custom exceptions for configuration management."""

from declutter.errors import DeclutterError


class ConfigError(DeclutterError):
    """Raised when configuration data cannot be read, parsed, or validated."""
