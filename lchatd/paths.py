"""Where lchatd keeps its files.

Everything lives under one home directory, ``~/.lchatd`` unless ``LCHATD_HOME``
points elsewhere::

    lchatd.toml      hub configuration
    hub_identity     Reticulum identity the hub announces with
    directory.toml   users and channels kept by DirectoryStore

The command line can move each file individually; these are only the defaults.
"""

from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "LCHATD_HOME"

CONFIG_FILENAME = "lchatd.toml"
IDENTITY_FILENAME = "hub_identity"
DIRECTORY_FILENAME = "directory.toml"


def default_lchatd_dir() -> Path:
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".lchatd"


def default_config_path() -> Path:
    return default_lchatd_dir() / CONFIG_FILENAME


def default_identity_path() -> Path:
    return default_lchatd_dir() / IDENTITY_FILENAME


def default_directory_path() -> Path:
    """The directory file holds user roles, bans and channel membership.

    It is rewritten on every directory change, so it sits beside the identity
    in the private home directory rather than in a shared config location.
    """
    return default_lchatd_dir() / DIRECTORY_FILENAME


def ensure_private_dir(path: Path) -> None:
    """Create ``path`` readable by the hub's user only.

    Both the hub identity and the directory file (ban reasons, memberships)
    end up here.
    """
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        # Some filesystems ignore mode bits.
        pass
