"""tmux availability check with install guidance."""

from __future__ import annotations

import logging as py_logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from agentsquad.errors import SessionError
from agentsquad.process import SubprocessRunner, run_captured

logger = py_logging.getLogger(__name__)

OS_RELEASE_PATH = Path("/etc/os-release")


@dataclass
class BootstrapResult:
    tmux_available: bool
    version: str = ""


def _install_command_for_os_release(os_release: str) -> str:
    """Return the package-manager command that installs tmux for the given OS."""
    lowered = os_release.lower()
    compact = lowered.replace(" ", "")

    _debian_ids = ("debian", "ubuntu", "pengwin", "kali", "mint", "pop", "elementary", "zorin")
    if any(name in lowered for name in _debian_ids) or "id_like=debian" in compact:
        return "sudo apt-get update && sudo apt-get install -y tmux"

    _rhel_ids = ("fedora", "rhel", "centos", "rocky", "almalinux", "oracle", "amazon")
    if any(name in lowered for name in _rhel_ids):
        return "sudo dnf install -y tmux"

    _arch_ids = ("arch", "manjaro", "endeavouros", "garuda")
    if any(name in lowered for name in _arch_ids) or "id_like=arch" in compact:
        return "sudo pacman -S --noconfirm tmux"

    if "opensuse" in lowered or "suse" in lowered:
        return "sudo zypper install -y tmux"

    if "alpine" in lowered:
        return "sudo apk add tmux"

    if "void" in lowered:
        return "sudo xbps-install -Sy tmux"

    if "gentoo" in lowered:
        return "sudo emerge app-misc/tmux"

    if "nixos" in lowered:
        return "nix profile install nixpkgs#tmux"

    return ""


def install_guidance(os_release: str, *, platform: str = sys.platform) -> str:
    if platform == "darwin":
        return "Install tmux with: brew install tmux"
    cmd = _install_command_for_os_release(os_release)
    if cmd:
        return f"Install tmux with: {cmd}"
    return "Install tmux with your system package manager and retry."


def _read_os_release(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return ""


def ensure_tmux(
    *,
    runner: SubprocessRunner = subprocess.run,
    os_release_path: Path = OS_RELEASE_PATH,
) -> BootstrapResult:
    check = run_captured(runner, ["tmux", "-V"])
    if check.returncode == 0:
        version = check.stdout.strip()
        logger.debug("tmux is available version=%s", version)
        return BootstrapResult(tmux_available=True, version=version)

    logger.error("tmux not found stderr=%s", check.stderr.strip())
    raise SessionError(
        "tmux is not installed or not on PATH.",
        hint=install_guidance(_read_os_release(os_release_path)),
    )
