"""Exceptions raised by the agent runtime."""


class InfraAgentError(Exception):
    """Base class for agent errors."""


class ConfigError(InfraAgentError):
    """Missing or invalid configuration. Fatal at startup."""


class UpdateError(InfraAgentError):
    """A self-update attempt failed; the live executable is untouched."""


class UnsupportedArchitectureError(UpdateError):
    """No release artifact is published for this host architecture."""


class DownloadError(UpdateError):
    """The release artifact could not be downloaded."""


class VerificationError(UpdateError):
    """The downloaded binary failed its self-check."""


class ReplaceError(UpdateError):
    """The downloaded binary could not be moved over the live one."""
