"""Configuration management for grace."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any, ClassVar

import yaml
from pydantic import BaseModel, Field


class PathsConfig(BaseModel):
    logs_file: Path = Path("grace.log")


class DefaultsConfig(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    encoding: str = "utf-8"


class Config(BaseModel):
    shell: str = "sh"
    paths: PathsConfig = Field(default_factory=PathsConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)

    _instance: ClassVar["Config | None"] = None
    _lock: ClassVar[Lock] = Lock()

    @classmethod
    def load(cls, path: str | Path = "grace.yaml") -> "Config":
        if cls._instance is not None:
            return cls._instance
        with cls._lock:
            if cls._instance is not None:
                return cls._instance

            payload: dict[str, Any] = {}
            cfg_path = Path(path)
            if cfg_path.exists():
                payload = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}

            cls._instance = cls.model_validate(payload)
            return cls._instance
