"""
Exception types shared across the backup tooling.

Per-stack problems are reported as outcomes (see `stackbackup.orchestrator`),
not raised; the exceptions below are for conditions that stop a whole command.
"""


class StackBackupError(Exception):
    """Base class for all errors raised by stackbackup."""


class ConfigError(StackBackupError, ValueError):
    """An environment variable or override holds an invalid value."""


class PreflightError(StackBackupError):
    """A precondition for the run is not met; no stack has been touched."""


class LockError(StackBackupError):
    """Another run of the same kind already holds the run lock."""


class RuntimeAdapterError(StackBackupError):
    """The container runtime could not be queried."""


class RestoreError(StackBackupError):
    """A restore could not be completed."""


class RestoreAborted(RestoreError):
    """The restore was aborted because of unresolved conflicts."""
