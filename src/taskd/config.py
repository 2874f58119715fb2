"""Configuration loading and management for taskd."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from taskd.errors import ConfigError
from taskd.models import TaskConfig, TaskdConfig

HOME_ENV_VAR = "TASKD_HOME"
DEFAULT_HOME_NAME = ".taskd"

CONFIG_FILE_NAME = "config.yaml"
TASKS_DIR_NAME = "tasks"
LOGS_DIR_NAME = "logs"
RUNTIME_FILE_NAME = "runtime.json"

TASK_FILE_SUFFIX = ".yaml"
TASK_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

__all__ = [
    "ConfigError",
    "create_default_config",
    "delete_task_file",
    "ensure_home",
    "get_config_file",
    "get_logs_dir",
    "get_runtime_file",
    "get_task_file_path",
    "get_taskd_home",
    "get_tasks_dir",
    "load_config",
    "load_task",
    "load_tasks",
    "save_task",
    "validate_task_name",
]


def get_taskd_home() -> Path:
    """Get the taskd home directory ($TASKD_HOME or ~/.taskd)."""
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / DEFAULT_HOME_NAME


def get_config_file(home: Path | None = None) -> Path:
    return (home or get_taskd_home()) / CONFIG_FILE_NAME


def get_tasks_dir(home: Path | None = None) -> Path:
    return (home or get_taskd_home()) / TASKS_DIR_NAME


def get_logs_dir(home: Path | None = None) -> Path:
    return (home or get_taskd_home()) / LOGS_DIR_NAME


def get_runtime_file(home: Path | None = None) -> Path:
    return (home or get_taskd_home()) / RUNTIME_FILE_NAME


def ensure_home(home: Path | None = None) -> Path:
    """Ensure the home directory and its subdirectories exist."""
    home = home or get_taskd_home()
    home.mkdir(parents=True, exist_ok=True)
    get_tasks_dir(home).mkdir(parents=True, exist_ok=True)
    get_logs_dir(home).mkdir(parents=True, exist_ok=True)
    return home


def expand_path(path: str | None) -> str | None:
    """Expand ~ and environment variables in a path."""
    if path is None:
        return None
    return os.path.expandvars(os.path.expanduser(path))


def validate_task_name(name: str) -> None:
    """Raise ConfigError if the name cannot be used as a task name."""
    if not name or not TASK_NAME_RE.match(name):
        raise ConfigError(
            f"invalid task name '{name}': use letters, digits, '.', '_' or '-', "
            "starting with a letter or digit"
        )


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML in {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> TaskdConfig:
    """Load the main taskd configuration."""
    path = config_path or get_config_file()

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return TaskdConfig()

    try:
        data = load_yaml_file(path)
        config = TaskdConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def create_default_config(home: Path | None = None) -> Path:
    """Create the home layout and a default config file if missing."""
    home = ensure_home(home)
    config_file = get_config_file(home)

    if not config_file.exists():
        with open(config_file, "w") as f:
            yaml.safe_dump(
                TaskdConfig().model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
        logger.info(f"Created default config at {config_file}")

    return home


def get_task_file_path(name: str, tasks_dir: Path | None = None) -> Path:
    """Get the definition file path for a task."""
    return (tasks_dir or get_tasks_dir()) / f"{name}{TASK_FILE_SUFFIX}"


def _parse_task(name: str, data: dict, source: Path) -> TaskConfig:
    data = dict(data)
    data["name"] = name
    if data.get("workdir"):
        data["workdir"] = expand_path(data["workdir"])
    try:
        return TaskConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid task file {source}: {e}") from e


def load_task(name: str, tasks_dir: Path | None = None) -> TaskConfig:
    """Load a single task definition.

    Args:
        name: Task name (file stem)
        tasks_dir: Optional tasks directory (defaults to $TASKD_HOME/tasks)

    Returns:
        The validated TaskConfig

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = get_task_file_path(name, tasks_dir)
    if not path.exists():
        raise ConfigError(f"Task file not found: {path}")
    return _parse_task(name, load_yaml_file(path), path)


def load_tasks(tasks_dir: Path | None = None) -> dict[str, TaskConfig]:
    """Load every task definition in the tasks directory.

    The task name is the filename without extension. Invalid files are
    logged and skipped so one broken definition cannot take down the rest.
    """
    tasks_dir = tasks_dir or get_tasks_dir()
    if not tasks_dir.is_dir():
        return {}

    tasks: dict[str, TaskConfig] = {}
    for task_file in sorted(tasks_dir.glob(f"*{TASK_FILE_SUFFIX}")):
        name = task_file.stem
        try:
            validate_task_name(name)
            tasks[name] = _parse_task(name, load_yaml_file(task_file), task_file)
        except (ConfigError, yaml.YAMLError, OSError) as e:
            logger.error(f"Failed to load task file {task_file}: {e}")

    logger.debug(f"Loaded {len(tasks)} tasks from {tasks_dir}")
    return tasks


def save_task(config: TaskConfig, tasks_dir: Path | None = None) -> Path:
    """Write a task definition to its own file.

    Args:
        config: Task configuration; its name is used as the filename
        tasks_dir: Optional tasks directory

    Returns:
        Path of the written file
    """
    validate_task_name(config.name)
    tasks_dir = tasks_dir or get_tasks_dir()
    tasks_dir.mkdir(parents=True, exist_ok=True)

    task_dict = config.model_dump(mode="json", exclude_none=True, exclude={"name"})
    task_file = get_task_file_path(config.name, tasks_dir)

    with open(task_file, "w") as f:
        yaml.dump(task_dict, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.debug(f"Saved task '{config.name}' to {task_file}")
    return task_file


def delete_task_file(name: str, tasks_dir: Path | None = None) -> bool:
    """Delete a task's definition file.

    Returns:
        True if the file was deleted, False if not found
    """
    task_file = get_task_file_path(name, tasks_dir)

    if task_file.exists():
        task_file.unlink()
        logger.info(f"Deleted task file {task_file}")
        return True

    logger.warning(f"Task file not found: {task_file}")
    return False
