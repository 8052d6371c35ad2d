"""Generation of sandbox-exec SBPL profiles from an instance configuration."""

from __future__ import annotations

import json

from yoloai.runtime import InstanceConfig

_SYSTEM_READ_PATHS = (
    "/usr/lib",
    "/usr/bin",
    "/usr/sbin",
    "/usr/local",
    "/usr/share",
    "/bin",
    "/sbin",
    "/System",
    "/Library",
    "/private/etc",
    "/opt/homebrew",  # Apple Silicon Homebrew
    "/usr/local/Cellar",  # Intel Homebrew
    "/usr/local/opt",  # Intel Homebrew symlinks
    "/usr/local/bin",  # Intel Homebrew binaries
    "/usr/local/lib",  # Intel Homebrew libraries
    "/Applications",
    "/var/run",
    "/var/db",
    "/dev",
)

_TEMP_PATHS = (
    "/tmp",
    "/private/tmp",
    "/private/var/folders",
)


def _quote(path: str) -> str:
    return json.dumps(path, ensure_ascii=False)


def system_read_paths() -> list[str]:
    """Paths readable for system libraries, frameworks and executables."""
    return list(_SYSTEM_READ_PATHS)


def temp_paths() -> list[str]:
    """Paths used for temporary file storage."""
    return list(_TEMP_PATHS)


def generate_profile(cfg: InstanceConfig, sandbox_dir: str, home_dir: str) -> str:
    """Build an SBPL profile for the instance, its sandbox dir and home dir."""
    lines: list[str] = [
        "(version 1)",
        "(deny default)",
        "",
        "; Process execution and signals",
        "(allow process-exec)",
        "(allow process-fork)",
        "(allow signal)",
        "",
        "; System information",
        "(allow sysctl-read)",
        "(allow file-read-metadata)",
        "",
        "; Root directory listing",
        '(allow file-read* (literal "/"))',
        "",
        "; System libraries, frameworks, and binaries",
    ]
    lines += [f"(allow file-read* (subpath {_quote(p)}))" for p in system_read_paths()]
    lines += ["", "; Temporary directories"]
    lines += [
        f"(allow file-read* file-write* (subpath {_quote(p)}))" for p in temp_paths()
    ]
    lines += [
        "",
        "; Mach and IPC (permissive initially)",
        "(allow mach-lookup)",
        "(allow ipc-posix-shm-read-data)",
        "(allow ipc-posix-shm-write-data)",
        "(allow ipc-posix-shm-write-create)",
        "(allow ipc-posix-sem)",
        "",
        "; Sandbox directory",
        f"(allow file-read* file-write* (subpath {_quote(sandbox_dir)}))",
        "",
        "; Mount-derived filesystem rules",
    ]
    for mount in cfg.mounts:
        if not mount.source:
            continue
        access = "file-read*" if mount.read_only else "file-read* file-write*"
        lines.append(f"(allow {access} (subpath {_quote(mount.source)}))")
    lines += [
        "",
        "; Home directory (limited read access)",
        f"(allow file-read* (subpath {_quote(home_dir)}))",
        "",
        "; Network access",
    ]
    if cfg.network_mode != "none":
        lines.append("(allow network*)")
    lines += [
        "",
        "; Pseudo-terminal access (required for tmux/agent)",
        "(allow file-ioctl)",
        '(allow file-read* file-write* (regex #"/dev/pty.*"))',
        '(allow file-read* file-write* (regex #"/dev/tty.*"))',
        '(allow file-read* file-write* (literal "/dev/ptmx"))',
        '(allow file-read* file-write* (literal "/dev/null"))',
        '(allow file-read* file-write* (literal "/dev/random"))',
        '(allow file-read* file-write* (literal "/dev/urandom"))',
    ]
    return "\n".join(lines) + "\n"