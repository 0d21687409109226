"""Application configuration: settings schema and config.yaml loader"""

import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, PositiveInt, field_validator

from mdreveal.core.ast.builder import ParserOptions
from mdreveal.core.transform.plugins import PluginRegistry, build_plugins
from mdreveal.core.transform.transformer import Effect, TransformerOptions


CONFIG_FILE = "config.yaml"
ENV_PREFIX = "MDREVEAL_"


def _split_list(value: Any) -> Any:
    """Accept "a,b" strings from the environment for list fields."""
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return value


class Settings(BaseModel):
    # --- reveal ---
    chars_per_tick: Union[PositiveInt, tuple[PositiveInt, PositiveInt]] = Field(
        default=2, description="Characters per tick, or min,max for a random pace")
    tick_interval:  float = Field(default=0.03, gt=0,  description="Seconds between reveal ticks")
    effect:         Effect = Field(default=Effect.typing, description="none, fade-in or typing")
    pause_on_hidden: bool = True
    fade_duration:  float = Field(default=0.3, ge=0,   description="Seconds a fade-in chunk stays animated")
    plugins:        list[str] = Field(default_factory=lambda: ["mermaid", "image", "thematic_break"],
                                      description="Built-in reveal plugins, in priority order")
    # --- grammar ---
    preset:         str = Field(default="gfm-like", pattern="^(gfm-like|commonmark)$", description="MarkdownIt preset name")
    math:           bool = True
    containers:     bool = True
    footnotes:      bool = True
    container_names: list[str] = Field(default_factory=list, description="Allowed ::: container names; empty = any")
    # --- cli streaming ---
    chunk_size:     int = Field(default=8, ge=1, description="Characters per simulated stream chunk")
    chunk_delay:    float = Field(default=0.02, ge=0, description="Seconds between simulated stream chunks")
    log_level:      str = Field(default="WARNING", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    @field_validator("chars_per_tick", mode="before")
    @classmethod
    def _parse_range(cls, value: Any) -> Any:
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",")]
            return tuple(parts) if len(parts) == 2 else parts[0]
        if isinstance(value, list):
            return tuple(value)
        return value

    @field_validator("chars_per_tick")
    @classmethod
    def _ordered_range(cls, value: Any) -> Any:
        if isinstance(value, tuple) and value[0] > value[1]:
            raise ValueError(f"chars_per_tick range {value} has min > max")
        return value

    @field_validator("plugins", "container_names", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("plugins")
    @classmethod
    def _known_plugins(cls, value: list[str]) -> list[str]:
        build_plugins(value)
        return value

    def parser_options(self) -> ParserOptions:
        return ParserOptions(
            preset=self.preset, math=self.math,
            containers=self.containers, container_names=self.container_names, footnotes=self.footnotes,
        )

    def transformer_options(self) -> TransformerOptions:
        return TransformerOptions(
            chars_per_tick=self.chars_per_tick, tick_interval=self.tick_interval,
            effect=self.effect, pause_on_hidden=self.pause_on_hidden, fade_duration=self.fade_duration,
        )

    def plugin_registry(self) -> PluginRegistry:
        names = list(self.plugins)
        # Math nodes only exist when the grammar produces them
        if self.math and "math" not in names:
            names.insert(0, "math")
        return build_plugins(names)


def load_config(overrides: Optional[dict[str, Any]] = None) -> Settings:
    """Load Settings from config.yaml, then MDREVEAL_<FIELD> env vars, then non-None CLI overrides."""
    data: dict[str, Any] = {}
    if Path(CONFIG_FILE).exists():
        try:
            data = yaml.safe_load(Path(CONFIG_FILE).read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid {CONFIG_FILE}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Invalid {CONFIG_FILE}: expected a mapping, got {type(data).__name__}")

    for name in Settings.model_fields:
        if val := os.getenv(f"{ENV_PREFIX}{name.upper()}"):
            data[name] = val

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings(**data)
    except ValueError as e:
        raise ValueError(f"Invalid settings: {e}") from e
