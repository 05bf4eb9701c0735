"""Shared test fixtures for the cowriter tests."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from cowriter.config import CowriterConfig, load_config

TASKS_YAML = """\
version: "1.0"
tasks:
  - uid: 1
    identifier: improve
    name: Improve text
    description: Improve <readability>
    category: content
    prompt_template: "Improve: {{input}}"
  - uid: 2
    identifier: translate
    name: Translate
    category: content
    configuration: precise
    prompt_template: "Translate: {{input}}"
  - uid: 3
    identifier: retired
    name: Retired task
    category: content
    active: false
    prompt_template: "{{input}}"
  - uid: 4
    identifier: seo
    name: SEO
    category: seo
    prompt_template: "{{input}}"
"""


def make_config_dict(tmp_path: Path, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a minimal config mapping pointing at files under tmp_path."""
    tasks_path = tmp_path / "tasks.yaml"
    tasks_path.write_text(TASKS_YAML)

    configurations: List[Dict[str, Any]] = [
        {
            "identifier": "default",
            "name": "Default",
            "provider": "test-provider",
            "model": "test-model",
            "is_default": True,
        },
        {
            "identifier": "precise",
            "name": "Precise <b>",
            "provider": "test-provider",
            "model": "precise-model",
            "temperature": 0.1,
        },
        {
            "identifier": "disabled",
            "name": "Disabled",
            "provider": "test-provider",
            "model": "old-model",
            "active": False,
        },
    ]
    config: Dict[str, Any] = {
        "providers": {
            "test-provider": {
                "base_url": "https://api.example.com/v1",
                "api_key_env": "TEST_API_KEY",
                "default_model": "test-model",
            }
        },
        "configurations": configurations,
        "rate_limit": {
            "requests_per_minute": 5,
            "window_seconds": 60,
        },
        "tasks_file": str(tasks_path),
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)
    return config


def write_config(tmp_path: Path, overrides: Optional[Dict[str, Any]] = None) -> str:
    """Write a test config file and return its path."""
    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(make_config_dict(tmp_path, overrides)))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return write_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> CowriterConfig:
    """Return a loaded test CowriterConfig."""
    return load_config(test_config_path)
