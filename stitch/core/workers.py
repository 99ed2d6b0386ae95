"""Worker registry: static lookup of worker type -> schemas and dispatch config.

The validator and compiler consult the registry read-only. Definitions are
loaded from YAML with defined precedence: the built-in package file first, then
any project or user files, merged by worker type (later files win).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from stitch.core.graph_schema import InputSchema, OutputSchema

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent.parent


class WorkerRegistryError(Exception):
    """Worker definitions could not be loaded."""

    pass


class WorkerDefinition(BaseModel):
    """Schema and dispatch configuration for one worker type"""

    id: str
    name: str = ""
    description: str = ""
    input: dict[str, InputSchema] = Field(default_factory=dict)
    output: dict[str, OutputSchema] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def endpoint(self) -> str | None:
        return self.config.get("endpoint")


class WorkerRegistry:
    """Read-only lookup of worker definitions."""

    STATIC_SEARCH_PATHS = [
        PACKAGE_DIR / "config/workers.yaml",
        Path.home() / ".stitch/workers.yaml",
    ]

    def __init__(self, definitions: dict[str, WorkerDefinition] | None = None):
        self._definitions: dict[str, WorkerDefinition] = dict(definitions or {})

    @classmethod
    def load(cls, extra_paths: list[Path] | None = None) -> WorkerRegistry:
        """Load built-in definitions plus any existing files in ``extra_paths``."""
        registry = cls()
        for path in [*cls.STATIC_SEARCH_PATHS, *(extra_paths or [])]:
            if path.exists():
                registry.merge_file(path)
        return registry

    def merge_file(self, path: Path) -> None:
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise WorkerRegistryError(f"Cannot read worker definitions from {path}: {e}") from e

        workers = raw.get("workers", {})
        if not isinstance(workers, dict):
            raise WorkerRegistryError(f"{path}: 'workers' must be a mapping of type -> definition")

        for worker_type, body in workers.items():
            try:
                definition = WorkerDefinition.model_validate({"id": worker_type, **(body or {})})
            except PydanticValidationError as e:
                raise WorkerRegistryError(
                    f"{path}: invalid definition for worker '{worker_type}': {e}"
                ) from e
            self._definitions[worker_type] = definition
        logger.debug(f"Loaded {len(workers)} worker definition(s) from {path}")

    def register(self, definition: WorkerDefinition) -> None:
        self._definitions[definition.id] = definition

    def get(self, worker_type: str) -> WorkerDefinition | None:
        return self._definitions.get(worker_type)

    def types(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, worker_type: str) -> bool:
        return worker_type in self._definitions
