from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from charter.errors import ConfigurationError

ActorRole = Literal["implementer", "reviewer", "infrastructure"]
ACTOR_ROLES = ("implementer", "reviewer", "infrastructure")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    state_dir: str = ".charter/state"


@dataclass(slots=True)
class RulesConfig:
    rules_path: str = ".charter/constitutional-rules.yaml"
    overrides_path: str = ".charter/state/overrides.json"
    clear_task_overrides_on_archive: bool = True


@dataclass(slots=True)
class BackendConfig:
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class StateConfig:
    autocommit: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ActorConfig:
    role: ActorRole = "implementer"
    command: list[str] = field(default_factory=list)
    fallback: list[str] = field(default_factory=list)


def _default_actors() -> dict[str, ActorConfig]:
    return {
        "qwen": ActorConfig(
            role="implementer",
            command=["qwen", "chat", "--file", "{prompt_file}", "--no-stream"],
        ),
        "claude": ActorConfig(
            role="reviewer",
            command=["claude", "-p", "{prompt}", "--output-format", "text"],
        ),
        "gemini": ActorConfig(
            role="infrastructure",
            command=["gemini", "-p", "{prompt}"],
        ),
    }


@dataclass(slots=True)
class CharterConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    actors: dict[str, ActorConfig] = field(default_factory=_default_actors)

    @classmethod
    def default(cls) -> CharterConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CharterConfig:
        raw_actors = data.get("actors")
        if raw_actors is None:
            actors = _default_actors()
        else:
            actors = {}
            for name, payload in raw_actors.items():
                try:
                    actor = ActorConfig(**payload)
                except TypeError as exc:
                    raise ConfigurationError(f"Invalid actor config for '{name}': {exc}") from exc
                if actor.role not in ACTOR_ROLES:
                    raise ConfigurationError(
                        f"Actor '{name}' has unsupported role '{actor.role}'."
                    )
                actors[name] = actor
        try:
            return cls(
                project=ProjectConfig(**data.get("project", {})),
                rules=RulesConfig(**data.get("rules", {})),
                backend=BackendConfig(**data.get("backend", {})),
                state=StateConfig(**data.get("state", {})),
                logging=LoggingConfig(**data.get("logging", {})),
                actors=actors,
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "state_dir": self.project.state_dir,
            },
            "rules": {
                "rules_path": self.rules.rules_path,
                "overrides_path": self.rules.overrides_path,
                "clear_task_overrides_on_archive": self.rules.clear_task_overrides_on_archive,
            },
            "backend": {
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "state": {
                "autocommit": self.state.autocommit,
            },
            "logging": {
                "level": self.logging.level,
            },
            "actors": {
                name: {
                    "role": actor.role,
                    "command": list(actor.command),
                    "fallback": list(actor.fallback),
                }
                for name, actor in self.actors.items()
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CharterConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "rules", "backend", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, actor in data["actors"].items():
        lines.append(f"[actors.{json.dumps(name)}]")
        for key, value in actor.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CharterConfig:
    if not path.exists():
        return CharterConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
    return CharterConfig.from_dict(data)


def save_config(path: Path, config: CharterConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
