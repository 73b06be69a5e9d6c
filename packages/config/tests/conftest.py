"""Pytest configuration and fixtures for config package tests."""

import shutil
import tempfile
from pathlib import Path

import pytest
import yaml


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp)


@pytest.fixture
def settings_file(temp_dir):
    """Write a settings YAML file referencing environment variables."""
    path = temp_dir / "settings.yaml"
    path.write_text(yaml.dump({
        "provider": "gemini",
        "api_key": "${TEST_GEMINI_KEY}",
        "default_temperature": "${TEST_TEMPERATURE:0.4}",
        "export": {"timeout_seconds": 45},
        "retry": {
            "grounding": "fast",
            "workflow_overrides": {"poem-generation": "aggressive"},
        },
        "documents": {"backend": "file", "path": str(temp_dir / "docs")},
    }))
    return path
