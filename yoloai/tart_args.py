"""Argument building and error mapping for the Tart VM backend."""

from __future__ import annotations

import json
import os
import posixpath
from typing import Mapping, Sequence

from yoloai.runtime import (
    ExecError,
    InstanceConfig,
    MountSpec,
    NotFoundError,
    NotRunningError,
    PortMapping,
)

INSTANCE_PREFIX = "yoloai-"

SHARED_DIR_NAME = "yoloai"
SHARED_DIR_VM_PATH = "/Volumes/My Shared Files"

VM_HOME_DIR = "/Users/admin"
DOCKER_HOME_DIR = "/home/yoloai"

_FATAL_EXEC_PATTERNS = (
    "unknown option",
    "executable file not found",
    "does not exist",
    "no such",
    "usage:",
)


def sandbox_name(instance_name: str) -> str:
    """Strip the instance prefix to recover the sandbox name."""
    return instance_name.removeprefix(INSTANCE_PREFIX)


def exec_args(vm_name: str, *args: str) -> list[str]:
    """Arguments for ``tart exec <vm-name> <command> [args...]``."""
    return ["exec", vm_name, *args]


def mount_dir_name(host_path: str) -> str:
    """VirtioFS share name for a host path: its last component, prefixed."""
    stripped = host_path.rstrip("/")
    if not stripped:
        base = "/" if host_path else "."
    else:
        base = posixpath.basename(stripped)
    return "m-" + base


def build_run_args(
    vm_name: str, sandbox_path: str, mounts: Sequence[MountSpec]
) -> list[str]:
    """Arguments for ``tart run``.

    The sandbox directory is always shared; other directory mounts outside
    it get their own share. Files are skipped since VirtioFS shares only
    directories. The VM name comes last.
    """
    args = ["run", "--no-graphics", "--dir", f"{SHARED_DIR_NAME}:{sandbox_path}"]
    for mount in mounts:
        if mount.source == sandbox_path or mount.source.startswith(sandbox_path + "/"):
            continue
        if not os.path.isdir(mount.source):
            continue
        args += ["--dir", f"{mount_dir_name(mount.source)}:{mount.source}"]
    args.append(vm_name)
    return args


def port_forward_args(ports: Sequence[PortMapping]) -> list[str] | None:
    """The ``--net-softnet-expose`` flag for the port mappings, or None."""
    if not ports:
        return None
    pairs = ",".join(f"{p.host_port}:{p.instance_port}" for p in ports)
    return ["--net-softnet-expose=" + pairs]


def build_network_args(cfg: InstanceConfig) -> list[str]:
    """Network arguments for ``tart run`` derived from the configuration."""
    args: list[str] = []
    isolated = cfg.network_mode == "none"
    block = [
        "--net-softnet",
        "--net-softnet-block=0.0.0.0/0",
        "--net-softnet-block=::/0",
    ]
    if isolated and cfg.ports:
        args += block
        args += [
            f"--net-softnet-allow={p.instance_port}/{p.protocol or 'tcp'}"
            for p in cfg.ports
        ]
        args += port_forward_args(cfg.ports) or []
    elif isolated:
        args += block
    elif cfg.ports:
        args.append("--net-softnet")
        args += port_forward_args(cfg.ports) or []
    return args


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def build_mount_symlink_cmds(
    mounts: Sequence[MountSpec], dir_names: Mapping[str, str]
) -> list[str]:
    """Shell commands linking mount targets to their VirtioFS paths."""
    cmds: list[str] = []
    for mount in mounts:
        dir_name = dir_names.get(mount.source)
        if dir_name is None:
            continue
        vfs_path = posixpath.normpath(posixpath.join(SHARED_DIR_VM_PATH, dir_name))
        if vfs_path == mount.target:
            continue
        parent = posixpath.normpath(posixpath.dirname(mount.target) or ".")
        cmds.append(f"sudo mkdir -p {_quote(parent)}")
        cmds.append(f"sudo ln -sf {_quote(vfs_path)} {_quote(mount.target)}")
    return cmds


def is_fatal_exec_error(stderr: str) -> bool:
    """Return True if a ``tart exec`` failure will not go away by retrying."""
    lower = stderr.lower()
    return any(pattern in lower for pattern in _FATAL_EXEC_PATTERNS)


def remap_target_path(target: str) -> str:
    """Translate a Linux-style mount target to its path inside a macOS VM."""
    if target.startswith(DOCKER_HOME_DIR + "/"):
        return VM_HOME_DIR + target[len(DOCKER_HOME_DIR):]
    if target == DOCKER_HOME_DIR:
        return VM_HOME_DIR
    if target.startswith("/yoloai/"):
        return VM_HOME_DIR + "/.yoloai" + target[len("/yoloai"):]
    if target.startswith("/Users/") and not target.startswith(VM_HOME_DIR):
        return VM_HOME_DIR + "/host" + target
    return target


def map_tart_error(error: BaseException, stderr: str) -> BaseException:
    """Map a failed tart command to NotFoundError, NotRunningError or an error
    carrying its stderr; with empty stderr the original error is returned."""
    lower = stderr.lower()
    if "does not exist" in lower or "not found" in lower or "no such" in lower:
        mapped: BaseException = NotFoundError()
    elif "not running" in lower or "is stopped" in lower:
        mapped = NotRunningError()
    elif stderr:
        mapped = ExecError(f"{error}: {stderr}")
    else:
        return error
    mapped.__cause__ = error
    return mapped