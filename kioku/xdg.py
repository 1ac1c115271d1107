"""Where kioku keeps its config file and databases."""

import os
from pathlib import Path


def get_xdg_config_path(filename: str, legacy_dir: bool = True) -> Path:
    """Locate a kioku config file such as ``config.json``.

    An existing file wins, checked in ``~/.kioku``, then
    ``$XDG_CONFIG_HOME/kioku``, then ``~/.config/kioku``. When none exists the
    path a new file should be written to is returned.
    """
    if legacy_dir:
        home_path = Path.home() / ".kioku" / filename
        if home_path.exists():
            return home_path

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        xdg_path = Path(xdg_config) / "kioku" / filename
        if xdg_path.exists():
            return xdg_path

    default_path = Path.home() / ".config" / "kioku" / filename
    if default_path.exists():
        return default_path

    if xdg_config:
        return Path(xdg_config) / "kioku" / filename
    return default_path


def get_xdg_data_path(subdir: str = "") -> Path:
    """Data directory under ``$XDG_DATA_HOME/kioku``; the default store files live in ``memory``."""
    xdg_data = os.environ.get("XDG_DATA_HOME", str(Path.home() / ".local" / "share"))
    data_path = Path(xdg_data) / "kioku"
    if subdir:
        data_path = data_path / subdir
    return data_path
