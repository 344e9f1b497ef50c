"""Build metadata exposed by the health endpoint.

APP_VERSION and GIT_COMMIT are set via environment variables in CI.
Locally, APP_VERSION falls back to the installed distribution version and
GIT_COMMIT to the short SHA read from git.
"""

import os
import subprocess
from importlib import metadata

DISTRIBUTION_NAME = "worlds-hub"


def _git_short_sha() -> str:
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],  # noqa: S607
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
    except (FileNotFoundError, subprocess.CalledProcessError):
        return "dev"


def _installed_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "dev"


APP_VERSION: str = os.environ.get("APP_VERSION") or _installed_version()
GIT_COMMIT: str = os.environ.get("GIT_COMMIT") or _git_short_sha()
