"""
Exception types raised by the audio2afan pipeline.
"""


class Audio2AfanError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(Audio2AfanError, ValueError):
    """The configuration document is malformed or inconsistent."""


class UninitializedError(Audio2AfanError, RuntimeError):
    """An operation needs a resource (engine, solve data) that was never loaded."""


class FormatError(Audio2AfanError, ValueError):
    """Binary input (array container or AFAN animation) could not be parsed."""


class RangeError(Audio2AfanError, ValueError):
    """An index, length or name is outside what the target supports."""
