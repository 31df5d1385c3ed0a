"""
Locate the OpenClaw command-line program.

Checks a prioritized list of install locations for an executable file, then
falls back to a PATH lookup.
"""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

# Private install prefix used when a global npm install is not permitted.
LOCAL_PREFIX = Path.home() / ".clawbridge" / "cli"


def search_paths(command_name: str = "openclaw", configured_path: Optional[str] = None) -> list[Path]:
    """Candidate install locations for *command_name*, most specific first."""
    home = Path.home()
    seen: set[Path] = set()
    paths: list[Path] = []

    def add(path: Path) -> None:
        if path not in seen:
            seen.add(path)
            paths.append(path)

    if configured_path and configured_path != command_name:
        add(Path(configured_path).expanduser())

    add(LOCAL_PREFIX / "bin" / command_name)

    if sys.platform == "win32":
        appdata = Path(os.environ.get("APPDATA") or home / "AppData" / "Roaming")
        add(appdata / "npm" / f"{command_name}.cmd")
        add(appdata / "npm" / command_name)
        return paths

    nvm_dir = Path(os.environ.get("NVM_DIR") or home / ".nvm")
    if nvm_dir.is_dir():
        add(nvm_dir / "current" / "bin" / command_name)
        versions_dir = nvm_dir / "versions" / "node"
        try:
            versions = sorted(
                (p.name for p in versions_dir.iterdir() if p.name.startswith("v")),
                reverse=True,
            )
        except OSError:
            versions = []
        for version in versions:
            add(versions_dir / version / "bin" / command_name)

    add(Path("/usr/local/bin") / command_name)
    if sys.platform == "darwin":
        add(Path("/opt/homebrew/bin") / command_name)
    add(Path("/usr/bin") / command_name)

    add(home / ".npm-global" / "bin" / command_name)
    add(home / ".local" / "bin" / command_name)
    add(home / "node_modules" / ".bin" / command_name)
    return paths


def is_executable(path: Path) -> bool:
    try:
        return path.is_file() and os.access(path, os.X_OK)
    except OSError:
        return False


def find_cli(command_name: str = "openclaw", configured_path: Optional[str] = None) -> Optional[str]:
    """Return the path of the first executable candidate, or None when not installed."""
    for candidate in search_paths(command_name, configured_path):
        if is_executable(candidate):
            logger.debug("discovery.found", path=str(candidate))
            return str(candidate)
    found = shutil.which(command_name)
    if found:
        logger.debug("discovery.found_on_path", path=found)
        return found
    logger.info("discovery.not_found", command=command_name)
    return None
