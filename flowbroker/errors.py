"""Exception hierarchy for the session broker.

One exception per failure family. Handlers translate these into typed
client events or HTTP error bodies; only startup failures escape.
"""
from __future__ import annotations


class BrokerError(Exception):
    """Base exception for all broker errors."""


class ConfigError(BrokerError):
    """Configuration file or environment value could not be used."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


class InvalidMessageError(BrokerError):
    """An inbound client message is malformed or has an unknown tag."""
    def __init__(self, reason: str, message_type: str | None = None):
        self.reason = reason
        self.message_type = message_type
        super().__init__(reason)


class GitCommandError(BrokerError):
    """A git (or gh) invocation exited non-zero."""
    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(args)} failed: {detail}")


class UploadError(BrokerError):
    """An upload request could not be parsed or persisted."""
