"""Per-user locations for the progress database, preferences and logs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from platformdirs import AppDirs

DEFAULT_APP_NAME = "rta-player"
HOME_ENV_VAR = "RTA_PLAYER_HOME"


@dataclass(frozen=True)
class AppPaths:
    data_dir: Path
    config_dir: Path

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def progress_db(self) -> Path:
        return self.data_dir / "progress.sqlite"

    @property
    def preferences(self) -> Path:
        return self.config_dir / "preferences.json"

    def ensure(self) -> AppPaths:
        """Create the directories and return self."""
        for directory in (self.data_dir, self.config_dir, self.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self


@lru_cache(maxsize=4)
def get_app_dirs(app_name: str = DEFAULT_APP_NAME) -> AppDirs:
    return AppDirs(app_name, appauthor=False)


def resolve_paths(app_name: str = DEFAULT_APP_NAME) -> AppPaths:
    """Return app paths, honoring `RTA_PLAYER_HOME` when it is set.

    The override keeps every file under one root, which is what portable
    installs and isolated test runs need.
    """
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        root = Path(override).expanduser()
        return AppPaths(data_dir=root / "data", config_dir=root / "config").ensure()
    dirs = get_app_dirs(app_name)
    return AppPaths(
        data_dir=Path(dirs.user_data_dir),
        config_dir=Path(dirs.user_config_dir),
    ).ensure()


def log_dir() -> Path:
    return resolve_paths().log_dir


def progress_db_path() -> Path:
    return resolve_paths().progress_db


def preferences_path() -> Path:
    return resolve_paths().preferences
