"""Editor tasks: reusable prompt templates offered in the cowriter dialog.

Tasks are defined in a YAML file. Each task carries a prompt template with an
``{{input}}`` placeholder that is filled with the editor's selection or
content element text.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

INPUT_PLACEHOLDER = "{{input}}"


@dataclass
class Task:
    """A single prompt template parsed from YAML configuration."""

    uid: int
    identifier: str
    name: str
    prompt_template: str
    description: str = ""
    category: str = "content"
    active: bool = True
    configuration: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create a Task from a dictionary (YAML-parsed)."""
        try:
            uid = int(data["uid"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("Task entries need an integer 'uid'") from exc

        identifier = data.get("identifier") or "task-{}".format(uid)
        return cls(
            uid=uid,
            identifier=identifier,
            name=data.get("name", identifier),
            prompt_template=data.get("prompt_template", INPUT_PLACEHOLDER),
            description=data.get("description", ""),
            category=data.get("category", "content"),
            active=data.get("active", True),
            configuration=data.get("configuration") or None,
        )

    def build_prompt(self, variables: Dict[str, str]) -> str:
        """Fill the template placeholders.

        A template without an ``{{input}}`` placeholder gets the input
        appended after a blank line.
        """
        prompt = self.prompt_template
        if INPUT_PLACEHOLDER not in prompt and "input" in variables:
            return "{}\n\n{}".format(prompt, variables["input"])
        for name, value in variables.items():
            prompt = prompt.replace("{{" + name + "}}", value)
        return prompt


@dataclass
class TaskConfig:
    """Top-level task file contents."""

    version: str = "1.0"
    tasks: List[Task] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskConfig":
        """Create a TaskConfig from a dictionary (YAML-parsed)."""
        tasks = [Task.from_dict(t) for t in data.get("tasks") or []]
        uids = [t.uid for t in tasks]
        if len(uids) != len(set(uids)):
            raise ValueError("Task uids must be unique")
        return cls(version=str(data.get("version", "1.0")), tasks=tasks)


def load_tasks(path: str) -> TaskConfig:
    """Load task definitions from a YAML file.

    Raises:
        FileNotFoundError: If the task file does not exist.
        ValueError: If the YAML is invalid.
    """
    task_path = Path(path)
    if not task_path.exists():
        raise FileNotFoundError("Task file not found: {}".format(path))

    with open(task_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError("Invalid task file: {}".format(exc)) from exc

    if not isinstance(raw, dict):
        raise ValueError("Task file must contain a YAML mapping at the top level")

    return TaskConfig.from_dict(raw)


class TaskRepository:
    """Lookup over the loaded tasks."""

    def __init__(self, config: Optional[TaskConfig] = None) -> None:
        self._config = config or TaskConfig()

    @property
    def tasks(self) -> List[Task]:
        return self._config.tasks

    def find_by_uid(self, uid: int) -> Optional[Task]:
        for task in self._config.tasks:
            if task.uid == uid:
                return task
        return None

    def find_by_category(self, category: str) -> List[Task]:
        return [t for t in self._config.tasks if t.category == category]
