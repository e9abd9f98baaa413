"""witness CLI — Entry point.

Usage:
    witness cargo check
    witness --path src,tests -e rs "cargo build && cargo test"
    witness --udp 9000 --key secret --wait ./server
    witness --trigger --udp 9000 --key secret
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from witness.config import BehaviourOptions, FileOptions, NetworkOptions, Settings
from witness.exceptions import ConfigError, WitnessError
from witness.logging import configure_logging, get_logger

app = typer.Typer(
    name="witness",
    help="Trigger a command in response to file changes or network requests.",
    add_completion=False,
    pretty_exceptions_enable=False,
)

console = Console(stderr=True)
log = get_logger(__name__)


def _split_csv(values: list[str] | None) -> list[str]:
    """Flatten repeated, comma-separated option values."""
    items: list[str] = []
    for value in values or []:
        items.extend(part for part in value.split(",") if part)
    return items


def _parse_ports(values: list[str] | None, option: str) -> list[int]:
    ports = []
    for item in _split_csv(values):
        try:
            ports.append(int(item))
        except ValueError:
            raise typer.BadParameter(f"not a port number: {item!r}", param_hint=option) from None
    return ports


def build_settings(
    config: Path | None = None,
    verbose: bool = False,
    paths: list[str] | None = None,
    debounce: str | None = None,
    extensions: list[str] | None = None,
    no_git_ignore: bool = False,
    udp: list[str] | None = None,
    tcp: list[str] | None = None,
    key: str | None = None,
    no_clear: bool = False,
    wait: bool = False,
    shell: str | None = None,
) -> Settings:
    """Merge command-line options over the loaded settings."""
    try:
        settings = Settings.load(config_file=config)
        files = settings.files.model_dump()
        network = settings.network.model_dump()
        behaviour = settings.behaviour.model_dump()

        udp_ports = _parse_ports(udp, "--udp")
        tcp_ports = _parse_ports(tcp, "--tcp")
        if udp_ports:
            network["udp"] = udp_ports
        if tcp_ports:
            network["tcp"] = tcp_ports
        if key is not None:
            network["key"] = key

        if paths:
            files["paths"] = _split_csv(paths)
        elif udp_ports or tcp_ports:
            # asking for network triggers turns off the default "." watch
            files["paths"] = []
        if debounce is not None:
            files["debounce"] = debounce
        if extensions:
            files["extensions"] = _split_csv(extensions)
        if no_git_ignore:
            files["respect_vcs_ignore"] = False

        if no_clear:
            behaviour["no_clear"] = True
        if wait:
            behaviour["wait"] = True
        if shell:
            behaviour["shell"] = shell

        settings.files = FileOptions(**files)
        settings.network = NetworkOptions(**network)
        settings.behaviour = BehaviourOptions(**behaviour)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    if verbose and settings.logging.level not in ("debug", "info"):
        settings.logging.level = "info"
    return settings


async def watch(settings: Settings, command: list[str]) -> None:
    """Run *command* under supervision until interrupted."""
    from witness.supervisor import Supervisor
    from witness.watcher import Watcher

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    watcher = Watcher(settings.files, settings.network)
    supervisor = Supervisor(
        command,
        watcher,
        shutdown,
        shell=settings.behaviour.shell,
        wait=settings.behaviour.wait,
        clear_screen=not settings.behaviour.no_clear,
    )

    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await watcher.start()
        await supervisor.run()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        await watcher.stop()


@app.command(context_settings={"allow_interspersed_args": False})
def main(
    command: Annotated[
        Optional[list[str]],
        typer.Argument(
            help=(
                "The command to execute. A single argument is passed to your shell, "
                'so quote pipelines: witness "ls | less".'
            ),
            show_default=False,
        ),
    ] = None,
    verbose: bool = typer.Option(False, "--verbose", help="Enable more verbose logging."),
    config: Annotated[
        Optional[Path], typer.Option("--config", help="Path to a YAML settings file.")
    ] = None,
    path: Annotated[
        Optional[list[str]],
        typer.Option("--path", help="Paths to watch for changes (comma separated, repeatable).", show_default="."),
    ] = None,
    debounce: Annotated[
        Optional[str],
        typer.Option("--debounce", help="Quiet time after a file change triggers execution.", show_default="100ms"),
    ] = None,
    extensions: Annotated[
        Optional[list[str]],
        typer.Option("--extensions", "-e", help="Only files with these extensions trigger execution."),
    ] = None,
    no_git_ignore: bool = typer.Option(False, "--no-git-ignore", help="Include files excluded by Git."),
    udp: Annotated[
        Optional[list[str]],
        typer.Option("--udp", help="UDP packets to these ports trigger execution."),
    ] = None,
    tcp: Annotated[
        Optional[list[str]],
        typer.Option("--tcp", help="TCP connections to these ports trigger execution."),
    ] = None,
    key: Annotated[
        Optional[str],
        typer.Option(
            "--key",
            help="Only network requests starting with this string trigger execution. Empty = any request.",
            show_default="witness-key",
        ),
    ] = None,
    trigger: bool = typer.Option(
        False, "--trigger", help="Send a network trigger instead of listening for one."
    ),
    no_clear: bool = typer.Option(False, "--no-clear", "-c", help="Don't clear the screen before each run."),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait on the command to finish before restarting."),
    shell: Annotated[
        Optional[str],
        typer.Option("--shell", envvar="SHELL", help="The shell used to interpret commands."),
    ] = None,
) -> None:
    """Trigger a command in response to certain events."""
    if trigger and command:
        raise typer.BadParameter("--trigger cannot be combined with a command")
    if trigger and (path or debounce is not None or extensions or no_git_ignore):
        raise typer.BadParameter(
            "--trigger cannot be combined with --path, --debounce, --extensions or --no-git-ignore"
        )
    if not trigger and not command:
        raise typer.BadParameter("missing command to execute", param_hint="COMMAND")

    try:
        settings = build_settings(
            config=config,
            verbose=verbose,
            paths=path,
            debounce=debounce,
            extensions=extensions,
            no_git_ignore=no_git_ignore,
            udp=udp,
            tcp=tcp,
            key=key,
            no_clear=no_clear,
            wait=wait,
            shell=shell,
        )
        configure_logging(
            level=settings.logging.level,
            format=settings.logging.format,
            log_file=str(settings.logging.file) if settings.logging.file else None,
        )

        if trigger:
            from witness.sources.client import send_triggers

            asyncio.run(
                send_triggers(settings.network.udp, settings.network.tcp, settings.network.key)
            )
        else:
            asyncio.run(watch(settings, list(command or [])))
    except WitnessError as exc:
        log.debug("fatal_error", error=repr(exc))
        console.print(f"[bold red]error:[/bold red] {escape(exc.message)}")
        raise typer.Exit(1)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
