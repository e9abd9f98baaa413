"""witness — Exception hierarchy.

All exceptions raised by witness inherit from WitnessError so that the CLI
can catch the full family with a single except clause and turn it into a
non-zero exit status.

Hierarchy:
    WitnessError
    ├── ConfigError
    ├── SourceError
    │   ├── WatchPathError
    │   ├── BindError
    │   └── ListenerError
    ├── TriggerChannelClosedError
    ├── TriggerSendError
    └── SupervisorError
        ├── SpawnError
        └── TerminateError
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class WitnessError(Exception):
    """Base exception for all witness errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


class ConfigError(WitnessError):
    """The supplied options are inconsistent or unusable."""


# ---------------------------------------------------------------------------
# Event sources
# ---------------------------------------------------------------------------


class SourceError(WitnessError):
    """Base for failures of the file and network trigger sources."""


class WatchPathError(SourceError):
    """A configured root path could not be watched."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(
            f"failed to watch path: {path} ({reason})",
            context={"path": str(path), "reason": reason},
        )
        self.path = path


class BindError(SourceError):
    """A UDP or TCP port could not be bound."""

    def __init__(self, protocol: str, port: int, reason: str) -> None:
        super().__init__(
            f"failed to bind {protocol} to port {port}: {reason}",
            context={"protocol": protocol, "port": port, "reason": reason},
        )
        self.protocol = protocol
        self.port = port


class ListenerError(SourceError):
    """A running receive or accept loop failed."""

    def __init__(self, protocol: str, address: Any, reason: str) -> None:
        super().__init__(
            f"{protocol} listener on {address} failed: {reason}",
            context={"protocol": protocol, "address": address, "reason": reason},
        )


class TriggerChannelClosedError(WitnessError):
    """Every producer of the trigger channel went away while supervising."""

    def __init__(self) -> None:
        super().__init__("file watcher closed unexpectedly")


class TriggerSendError(WitnessError):
    """A trigger could not be delivered to another witness instance."""


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class SupervisorError(WitnessError):
    """Base for child-process lifecycle failures."""


class SpawnError(SupervisorError):
    """The child command could not be started."""

    def __init__(self, command: list[str], reason: str) -> None:
        super().__init__(
            f"failed to run command: {' '.join(command)} ({reason})",
            context={"command": command, "reason": reason},
        )
        self.command = command


class TerminateError(SupervisorError):
    """The running child could not be killed or reaped during a restart."""

    def __init__(self, pid: int | None, reason: str) -> None:
        super().__init__(
            f"failed to terminate child process {pid}: {reason}",
            context={"pid": pid, "reason": reason},
        )
        self.pid = pid
