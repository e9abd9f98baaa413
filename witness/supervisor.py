"""Supervisor — runs the command and restarts it on every trigger.

State machine::

    STARTING ──► RUNNING ──► RESTART_IMMEDIATE ───► STARTING
                   │    └──► AWAITING_COMPLETION ─► STARTING
                   └───────► SHUTTING_DOWN (terminal)

While RUNNING the supervisor waits for whichever happens first:

1. a trigger from the watcher:
   - immediate policy: kill the child (and its descendants), reap it, restart
   - wait policy: mark a restart as pending and keep the child running
2. the child exiting, but only once a restart is pending
3. the shutdown event (Ctrl-C): return without touching the child

The supervisor is the only owner of the child process.  The record is
replaced wholesale on each restart; nothing keeps a handle to an old child.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from enum import Enum
from typing import IO, Awaitable, Protocol

import psutil

from witness.channel import ExecutionTrigger
from witness.exceptions import SpawnError, TerminateError, TriggerChannelClosedError
from witness.logging import bind_run_context, get_logger

log = get_logger(__name__)

# VT100 "reset to initial state", clears the screen and scrollback.
CLEAR_SCREEN = b"\x1bc"


class TriggerSource(Protocol):
    def recv(self) -> Awaitable[ExecutionTrigger | None]: ...


class SupervisorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTART_IMMEDIATE = "restart_immediate"
    AWAITING_COMPLETION = "awaiting_completion"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class ChildProcess:
    """The one child the supervisor currently owns."""

    process: asyncio.subprocess.Process
    restart_pending: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid


def build_command(command: list[str], shell: str) -> list[str]:
    """Return the argv to execute.

    A single string is handed to *shell* with ``-c`` so pipes and ``&&``
    work; several items are executed directly, bypassing the shell.
    """
    if not command:
        raise ValueError("no command given")
    if len(command) == 1:
        return [shell, "-c", command[0]]
    return list(command)


class Supervisor:
    """Drives one child process through the restart state machine.

    Usage::

        supervisor = Supervisor(["cargo check"], watcher, shutdown, shell="/bin/sh")
        await supervisor.run()   # returns when *shutdown* is set
    """

    def __init__(
        self,
        command: list[str],
        triggers: TriggerSource,
        shutdown: asyncio.Event,
        *,
        shell: str = "/bin/sh",
        wait: bool = False,
        clear_screen: bool = True,
        stdout: IO[bytes] | None = None,
    ) -> None:
        self._argv = build_command(command, shell)
        self._display = " ".join(command)
        self._triggers = triggers
        self._shutdown = shutdown
        self._wait = wait
        self._clear_screen = clear_screen
        self._stdout = stdout
        self.state = SupervisorState.STARTING
        self.runs = 0

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    async def run(self) -> None:
        """Supervise until the shutdown event is set.

        Raises a ``WitnessError`` subclass on any fatal condition.
        """
        recv_task: asyncio.Task[ExecutionTrigger | None] | None = None
        shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        try:
            while True:
                child = await self._spawn()
                self.state = SupervisorState.RUNNING

                while True:
                    if recv_task is None:
                        recv_task = asyncio.ensure_future(self._triggers.recv())
                    waiting: set[asyncio.Future] = {recv_task, shutdown_task}
                    exit_task = None
                    if child.restart_pending:
                        exit_task = asyncio.ensure_future(child.process.wait())
                        waiting.add(exit_task)

                    done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                    if exit_task is not None and exit_task not in done:
                        exit_task.cancel()

                    if shutdown_task in done:
                        self.state = SupervisorState.SHUTTING_DOWN
                        log.info("supervisor_interrupted", pid=child.pid)
                        return

                    if exit_task is not None and exit_task in done:
                        log.info("command_terminated", exit_status=exit_task.result())
                        break

                    if recv_task in done:
                        trigger = recv_task.result()
                        recv_task = None
                        if trigger is None:
                            raise TriggerChannelClosedError()
                        if self._wait:
                            if not child.restart_pending:
                                log.info("restart_pending", pid=child.pid)
                            self.state = SupervisorState.AWAITING_COMPLETION
                            child.restart_pending = True
                        else:
                            self.state = SupervisorState.RESTART_IMMEDIATE
                            await self._terminate(child)
                            break
        finally:
            for task in (recv_task, shutdown_task):
                if task is not None and not task.done():
                    task.cancel()

    # ---------------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------------

    async def _spawn(self) -> ChildProcess:
        self.state = SupervisorState.STARTING
        if self._clear_screen:
            self._write_clear()

        try:
            process = await asyncio.create_subprocess_exec(*self._argv)
        except OSError as exc:
            raise SpawnError(self._argv, str(exc)) from exc

        self.runs += 1
        bind_run_context(self.runs)
        log.info("command_started", pid=process.pid, command=self._display)
        return ChildProcess(process=process)

    def _write_clear(self) -> None:
        stream = self._stdout if self._stdout is not None else sys.stdout.buffer
        stream.write(CLEAR_SCREEN)
        stream.flush()

    async def _terminate(self, child: ChildProcess) -> None:
        """Kill the child and everything it spawned, then reap it."""
        log.info("waiting_for_child_to_terminate", pid=child.pid)
        # once reaped, the pid may already belong to someone else
        if child.process.returncode is None:
            try:
                _kill_tree(child.pid)
            except psutil.Error as exc:
                raise TerminateError(child.pid, str(exc)) from exc
        try:
            await child.process.wait()
        except OSError as exc:
            raise TerminateError(child.pid, str(exc)) from exc


def _kill_tree(pid: int) -> None:
    """SIGKILL *pid* and all of its descendants.  Already-gone processes are fine."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    for proc in (parent, *children):
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
