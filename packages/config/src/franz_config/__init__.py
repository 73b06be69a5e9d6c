"""Configuration for the writer engine.

Example:
    ```python
    from franz_config import load_settings

    settings = load_settings("settings.yaml")
    settings.retry.preset_for("grounding", workflow_id="press-release")
    ```
"""

from franz_config.settings import (
    RETRY_OPERATIONS,
    DocumentSettings,
    ExportSettings,
    RetrySettings,
    SettingsFileNotFoundError,
    WriterSettings,
    load_settings,
)
from franz_config.substitution import VariableSubstitution, substitute_env_vars

__all__ = [
    "RETRY_OPERATIONS",
    "DocumentSettings",
    "ExportSettings",
    "RetrySettings",
    "SettingsFileNotFoundError",
    "WriterSettings",
    "load_settings",
    "VariableSubstitution",
    "substitute_env_vars",
]
