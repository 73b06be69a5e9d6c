"""Loading workflow definitions from YAML/JSON files."""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any, Iterable

import yaml

from franz_common.exceptions import ConfigurationError, NotFoundError, SerializationError
from franz_common.registry import Registry

from .workflow import Workflow

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".yaml", ".yml", ".json")


class WorkflowLoader:
    """Reads workflow files into validated ``Workflow`` objects.

    Example:
        ```python
        loader = WorkflowLoader()
        workflow = loader.load("workflows/press-release.yaml")
        workflows = loader.load_directory("workflows/")
        ```
    """

    def load(self, path: str | Path) -> Workflow:
        """Load and validate one workflow file.

        Raises:
            NotFoundError: If the file does not exist
            SerializationError: If the file cannot be parsed
            WorkflowValidationError: If the definition is inconsistent
        """
        path = Path(path)
        if not path.exists():
            raise NotFoundError(
                f"Workflow file not found: {path}", context={"path": str(path)}
            )
        with open(path, encoding="utf-8") as f:
            text = f.read()
        workflow = self.load_from_text(text, fmt=path.suffix.lower(), source=str(path))
        logger.debug("Loaded workflow %s from %s", workflow.id, path)
        return workflow

    def load_from_text(self, text: str, fmt: str = ".yaml", source: str = "<string>") -> Workflow:
        try:
            if fmt == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise SerializationError(
                f"Cannot parse workflow {source}: {e}", context={"source": source}
            ) from e
        return self.load_from_dict(data, source=source)

    def load_from_dict(self, data: Any, source: str = "<dict>") -> Workflow:
        if not isinstance(data, dict):
            raise SerializationError(
                f"Workflow {source} must be a mapping",
                context={"source": source, "type": type(data).__name__},
            )
        return Workflow.from_dict(data).validate()

    def load_directory(self, directory: str | Path) -> list[Workflow]:
        """Load every workflow file in a directory, sorted by file name.

        Raises:
            ConfigurationError: If ``directory`` is not a directory
        """
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            raise ConfigurationError(
                f"Workflow directory not found: {directory}",
                context={"path": str(directory)},
            )
        return [
            self.load(path)
            for path in sorted(directory.iterdir())
            if path.suffix.lower() in WORKFLOW_SUFFIXES
        ]


def builtin_workflows() -> list[Workflow]:
    """Workflows shipped with the package."""
    loader = WorkflowLoader()
    workflows = []
    package_dir = resources.files("franz_wizard") / "workflows"
    for entry in sorted(package_dir.iterdir(), key=lambda p: p.name):
        suffix = Path(entry.name).suffix.lower()
        if suffix in WORKFLOW_SUFFIXES:
            workflows.append(
                loader.load_from_text(entry.read_text(encoding="utf-8"), fmt=suffix, source=entry.name)
            )
    return workflows


class WorkflowRegistry(Registry[Workflow]):
    """Workflows by id, also reachable by short name."""

    def __init__(self, workflows: Iterable[Workflow] = ()):
        super().__init__("workflows")
        for workflow in workflows:
            self.add(workflow)

    @classmethod
    def default(cls, extra_dir: str | Path | None = None) -> WorkflowRegistry:
        """Built-in workflows plus, optionally, those in ``extra_dir``.

        Workflows in ``extra_dir`` replace built-ins with the same id.
        """
        registry = cls(builtin_workflows())
        if extra_dir:
            for workflow in WorkflowLoader().load_directory(extra_dir):
                registry.add(workflow, allow_overwrite=True)
        return registry

    def add(self, workflow: Workflow, allow_overwrite: bool = False) -> None:
        self.register(
            workflow.id, workflow, aliases=[workflow.short_name], allow_overwrite=allow_overwrite
        )

    def get_by_short_name(self, short_name: str) -> Workflow:
        """Raises NotFoundError if no workflow has this short name."""
        workflow = self.find(lambda w: w.short_name == short_name)
        if workflow is None:
            raise NotFoundError(
                f"No workflow with short name: {short_name}",
                context={"short_name": short_name},
            )
        return workflow

    def resolve(self, key: str) -> Workflow:
        """Look up by id, falling back to short name."""
        try:
            return super().resolve(key)
        except NotFoundError:
            raise NotFoundError(
                f"Workflow not found: {key}",
                context={"key": key, "available": self.keys()},
            ) from None
