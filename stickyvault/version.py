"""Package version, from the checkout's pyproject.toml or installed metadata."""

from importlib.metadata import PackageNotFoundError, version as metadata_version
from pathlib import Path

import tomllib

PACKAGE_NAME = "stickyvault"
UNKNOWN_VERSION = "0.0.0"


def _checkout_version(pyproject: Path) -> str | None:
    try:
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return None
    project = data.get("project", {})
    # Only our own pyproject counts; site-packages may sit next to anything.
    if project.get("name") != PACKAGE_NAME:
        return None
    return project.get("version")


def get_version(pyproject: Path | None = None) -> str:
    """Version of the running code.

    A source checkout or editable install reports what pyproject.toml says now,
    so a bumped version shows up without reinstalling.
    """
    pyproject = pyproject or Path(__file__).resolve().parents[1] / "pyproject.toml"
    checkout = _checkout_version(pyproject)
    if checkout:
        return checkout
    try:
        return metadata_version(PACKAGE_NAME)
    except PackageNotFoundError:
        return UNKNOWN_VERSION
