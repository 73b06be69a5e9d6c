"""Runtime settings for the writer engine.

Settings come from three layers, later layers winning:

1. dataclass defaults
2. an optional YAML (or JSON) settings file, with ``${VAR:default}``
   references resolved against the environment
3. environment variables (``FRANZ_*``, ``GEMINI_API_KEY``, ``AI_RETRY_*``)

Example settings file:

```yaml
provider: gemini
api_key: ${GEMINI_API_KEY}
default_model: gemini-2.5-flash
export:
  timeout_seconds: 45
retry:
  grounding: RATE_LIMIT
  workflow_overrides:
    poem-generation: AGGRESSIVE
documents:
  backend: file
  path: ~/.franz/documents
```
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from franz_common.exceptions import ConfigurationError, NotFoundError
from franz_config.substitution import VariableSubstitution

logger = logging.getLogger(__name__)

RETRY_OPERATIONS = (
    "text_generation",
    "image_generation",
    "grounding",
)

RETRY_PRESET_NAMES = ("CONSERVATIVE", "STANDARD", "AGGRESSIVE", "RATE_LIMIT", "FAST", "NONE")


class SettingsFileNotFoundError(NotFoundError):
    """Raised when an explicitly requested settings file does not exist."""

    pass


@dataclass
class RetrySettings:
    """Which retry preset each kind of AI operation uses.

    Lookup order for an operation is stage override, then workflow override,
    then the operation's own preset.
    """

    default: str = "STANDARD"
    text_generation: str = "STANDARD"
    image_generation: str = "AGGRESSIVE"
    grounding: str = "RATE_LIMIT"
    enable_detailed_logging: bool = True
    workflow_overrides: dict[str, str] = field(default_factory=dict)
    stage_overrides: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("default", *RETRY_OPERATIONS):
            setattr(self, name, _preset_name(getattr(self, name)))
        self.workflow_overrides = {
            k: _preset_name(v) for k, v in self.workflow_overrides.items()
        }
        self.stage_overrides = {
            k: _preset_name(v) for k, v in self.stage_overrides.items()
        }

    def preset_for(
        self,
        operation: str,
        workflow_id: str | None = None,
        stage_id: str | None = None,
    ) -> str:
        """Return the preset name for an operation in a workflow/stage context."""
        if stage_id and stage_id in self.stage_overrides:
            return self.stage_overrides[stage_id]
        if workflow_id and workflow_id in self.workflow_overrides:
            return self.workflow_overrides[workflow_id]
        if operation in RETRY_OPERATIONS:
            return getattr(self, operation)
        return self.default


@dataclass
class ExportSettings:
    """Export job behaviour."""

    timeout_seconds: float = 30.0
    cleanup_after_days: int = 7
    use_ai: bool = True


@dataclass
class DocumentSettings:
    """Where wizard documents are persisted."""

    backend: str = "memory"
    path: str = "~/.franz/documents"

    def __post_init__(self) -> None:
        if self.backend not in ("memory", "file"):
            raise ConfigurationError(
                f"Unknown document store backend: {self.backend}",
                context={"backend": self.backend, "available": ["memory", "file"]},
            )


@dataclass
class WriterSettings:
    """Top-level settings object passed to the engine and CLI."""

    provider: str = "echo"
    api_key: str | None = None
    default_model: str = "gemini-2.5-flash"
    image_model: str = "imagen-4.0-generate-001"
    default_temperature: float = 0.7
    log_level: str = "WARNING"
    workflows_dir: str | None = None
    event_bus: dict[str, Any] = field(default_factory=lambda: {"backend": "memory"})
    retry: RetrySettings = field(default_factory=RetrySettings)
    export: ExportSettings = field(default_factory=ExportSettings)
    documents: DocumentSettings = field(default_factory=DocumentSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WriterSettings:
        """Build settings from a plain mapping, ignoring unknown keys with a warning."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Ignoring unknown settings key: %s", key)
                continue
            kwargs[key] = value

        nested = {"retry": RetrySettings, "export": ExportSettings, "documents": DocumentSettings}
        for key, nested_cls in nested.items():
            value = kwargs.get(key)
            if isinstance(value, Mapping):
                kwargs[key] = _build_nested(nested_cls, value)

        if "default_temperature" in kwargs:
            kwargs["default_temperature"] = float(kwargs["default_temperature"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def documents_path(self) -> Path:
        return Path(self.documents.path).expanduser()


def _build_nested(cls: type, data: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def _preset_name(value: Any) -> str:
    name = str(value).upper().replace("-", "_")
    if name not in RETRY_PRESET_NAMES:
        raise ConfigurationError(
            f"Unknown retry preset: {value}",
            context={"preset": value, "available": list(RETRY_PRESET_NAMES)},
        )
    return name


def _read_settings_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    with open(path) as f:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif suffix == ".json":
            data = json.load(f)
        else:
            raise ConfigurationError(
                f"Unsupported settings file format: {suffix}",
                context={"path": str(path)},
            )
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            "Settings file must contain a mapping",
            context={"path": str(path), "type": type(data).__name__},
        )
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect settings overrides from environment variables."""
    overrides: dict[str, Any] = {}

    simple = {
        "FRANZ_PROVIDER": "provider",
        "FRANZ_DEFAULT_MODEL": "default_model",
        "FRANZ_IMAGE_MODEL": "image_model",
        "FRANZ_DEFAULT_TEMPERATURE": "default_temperature",
        "FRANZ_LOG_LEVEL": "log_level",
        "FRANZ_WORKFLOWS_DIR": "workflows_dir",
    }
    for env_name, key in simple.items():
        if environ.get(env_name):
            overrides[key] = environ[env_name]

    api_key = environ.get("GEMINI_API_KEY") or environ.get("GOOGLE_API_KEY")
    if api_key:
        overrides["api_key"] = api_key

    export: dict[str, Any] = {}
    if environ.get("FRANZ_EXPORT_TIMEOUT"):
        export["timeout_seconds"] = float(environ["FRANZ_EXPORT_TIMEOUT"])
    if environ.get("FRANZ_EXPORT_CLEANUP_DAYS"):
        export["cleanup_after_days"] = int(environ["FRANZ_EXPORT_CLEANUP_DAYS"])
    if export:
        overrides["export"] = export

    documents: dict[str, Any] = {}
    if environ.get("FRANZ_DOCUMENT_STORE"):
        documents["backend"] = environ["FRANZ_DOCUMENT_STORE"]
    if environ.get("FRANZ_DOCUMENT_PATH"):
        documents["path"] = environ["FRANZ_DOCUMENT_PATH"]
    if documents:
        overrides["documents"] = documents

    retry: dict[str, Any] = {}
    for name in ("default", *RETRY_OPERATIONS):
        env_name = f"AI_RETRY_{name.upper()}"
        if environ.get(env_name):
            retry[name] = environ[env_name]
    if environ.get("AI_RETRY_ENABLE_DETAILED_LOGGING"):
        retry["enable_detailed_logging"] = (
            environ["AI_RETRY_ENABLE_DETAILED_LOGGING"].lower() == "true"
        )
    if retry:
        overrides["retry"] = retry

    return overrides


def _merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _merge(dict(result[key]), value)
        else:
            result[key] = value
    return result


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WriterSettings:
    """Load settings from an optional file and the environment.

    When ``path`` is None, ``FRANZ_SETTINGS`` is consulted; a missing
    implicit file is not an error, a missing explicit one is.

    Raises:
        SettingsFileNotFoundError: If an explicit settings file does not exist
        ConfigurationError: If the file or an override is invalid
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is None and environ.get("FRANZ_SETTINGS"):
        path = environ["FRANZ_SETTINGS"]

    if path is not None:
        settings_path = Path(path).expanduser()
        if not settings_path.exists():
            raise SettingsFileNotFoundError(
                f"Settings file not found: {settings_path}",
                context={"path": str(settings_path)},
            )
        raw = _read_settings_file(settings_path)
        data = VariableSubstitution(environ).substitute(raw)
        logger.debug("Loaded settings from %s", settings_path)

    data = _merge(data, _env_overrides(environ))
    return WriterSettings.from_dict(data)
