"""witness — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. Environment variables prefixed with WITNESS_ (nested with ``__``,
       e.g. ``WITNESS_NETWORK__KEY=secret``)
    3. An optional YAML file passed with ``--config``
    4. Command-line options, applied by the CLI on top of the loaded object

All options are fixed once the watcher and supervisor have been built;
there is no reconfiguration at runtime.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_KEY = "witness-key"
"""Shared key used for network triggers when none is configured."""

# Suffix → seconds.  Longer suffixes first so that "ms" wins over "s".
_DURATION_UNITS: tuple[tuple[str, float], ...] = (
    ("ns", 1e-9),
    ("us", 1e-6),
    ("ms", 1e-3),
    ("s", 1.0),
    ("m", 60.0),
    ("h", 3600.0),
    ("d", 86400.0),
)


def parse_duration(text: str) -> float:
    """Parse a human duration such as ``"100ms"`` or ``"1.5m"`` into seconds.

    Plain numbers are taken as seconds.  Raises ``ValueError`` for anything
    else, including negative values.
    """
    text = text.strip()
    for suffix, scale in _DURATION_UNITS:
        if text.endswith(suffix):
            digits = text[: -len(suffix)]
            try:
                value = float(digits) * scale
            except ValueError:
                raise ValueError(f"invalid duration: {text!r}") from None
            break
    else:
        try:
            value = float(text)
        except ValueError:
            raise ValueError(f"not a valid duration specifier: {text!r}") from None
    if value < 0:
        raise ValueError(f"duration must not be negative: {text!r}")
    return value


def _dedupe(items: list) -> list:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class FileOptions(BaseModel):
    """Options affecting how watched files are treated."""

    paths: list[Path] = Field(
        default_factory=lambda: [Path(".")],
        description="Root paths watched recursively. Duplicates are dropped.",
    )
    debounce: Annotated[float, Field(ge=0.0)] = Field(
        default=0.1,
        description="Seconds during which further file events are discarded after a trigger.",
    )
    extensions: set[str] | None = Field(
        default=None,
        description="Only files with one of these extensions trigger execution. None = any file.",
    )
    respect_vcs_ignore: bool = Field(
        default=True,
        description="Skip files that git reports as ignored.",
    )

    @field_validator("paths")
    @classmethod
    def dedupe_paths(cls, v: list[Path]) -> list[Path]:
        return _dedupe(v)

    @field_validator("debounce", mode="before")
    @classmethod
    def parse_debounce(cls, v: object) -> object:
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("extensions", mode="before")
    @classmethod
    def normalise_extensions(cls, v: object) -> object:
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split(",")
        # Accept both "rs" and ".rs"; case is kept as given.
        return {ext[1:] if ext.startswith(".") else ext for ext in v if ext}


class NetworkOptions(BaseModel):
    """Options affecting how network triggers are received (or sent)."""

    udp: list[Annotated[int, Field(ge=0, le=65535)]] = Field(
        default_factory=list,
        description="UDP ports on which a datagram starting with the key triggers execution.",
    )
    tcp: list[Annotated[int, Field(ge=0, le=65535)]] = Field(
        default_factory=list,
        description="TCP ports on which a connection sending the key triggers execution.",
    )
    key: str = Field(
        default=DEFAULT_KEY,
        description="Shared key prefix. The empty string accepts any request.",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Address the listeners bind to.",
    )

    @field_validator("udp", "tcp")
    @classmethod
    def dedupe_ports(cls, v: list[int]) -> list[int]:
        return _dedupe(v)

    @property
    def enabled(self) -> bool:
        return bool(self.udp or self.tcp)


class BehaviourOptions(BaseModel):
    """Options affecting how the supervised command is (re)started."""

    wait: bool = Field(
        default=False,
        description="Wait for the command to finish before restarting it.",
    )
    no_clear: bool = Field(
        default=False,
        description="Don't clear the screen before each run.",
    )
    shell: str = Field(
        default_factory=lambda: os.environ.get("SHELL") or "/bin/sh",
        description="Shell used to interpret a single-string command.",
    )


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "warning"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WITNESS_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    files: FileOptions = Field(default_factory=FileOptions)
    network: NetworkOptions = Field(default_factory=NetworkOptions)
    behaviour: BehaviourOptions = Field(default_factory=BehaviourOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from an optional YAML file + environment variables."""
        data: dict[str, object] = {}

        if config_file is not None:
            if not config_file.exists():
                from witness.exceptions import ConfigError

                raise ConfigError(
                    f"config file not found: {config_file}",
                    context={"path": str(config_file)},
                )
            import yaml  # lazy import, only needed with --config

            with config_file.open() as f:
                loaded = yaml.safe_load(f) or {}
                data.update(loaded)

        return cls(**data)
