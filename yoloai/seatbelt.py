"""Sandbox backend that runs agents under macOS sandbox-exec profiles."""

from __future__ import annotations

import json
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Sequence

from yoloai.runtime import (
    ExecError,
    ExecResult,
    InstanceConfig,
    InstanceInfo,
    MountSpec,
    NotFoundError,
    NotRunningError,
    PruneResult,
    Runtime,
    is_macos,
    run_cmd_exec,
)
from yoloai.seatbelt_profile import generate_profile

PID_FILE_NAME = "seatbelt.pid"
PROCESS_LOG_FILE_NAME = "seatbelt.log"
SEATBELT_CONFIG_FILE_NAME = "seatbelt-instance.json"
PROFILE_FILE_NAME = "profile.sb"
TMUX_SOCKET_NAME = "tmux.sock"
SYMLINK_MANIFEST_NAME = "mount-symlinks.txt"

INSTANCE_PREFIX = "yoloai-"
SECRETS_PREFIX = "/run/secrets/"

REQUIRED_BINARIES = ("sandbox-exec", "tmux", "jq")

_TMUX_WAIT_TIMEOUT = 30.0
_TMUX_POLL_INTERVAL = 0.5


@dataclass
class Command:
    """A command line to run, with an optional working directory."""

    args: list[str]
    cwd: str | None = None


def sandbox_name(instance_name: str) -> str:
    """Strip the instance prefix to recover the sandbox name."""
    return instance_name.removeprefix(INSTANCE_PREFIX)


def _write_file(path: str, data: bytes, mode: int = 0o600) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def mount_symlinks(mounts: Sequence[MountSpec]) -> list[str]:
    """Link each mount target to its source where the two differ.

    Only directory sources are linked; secrets, existing targets and
    targets whose parent cannot be created are skipped. Returns the paths
    of the symlinks created.
    """
    created: list[str] = []
    for mount in mounts:
        if not mount.source or mount.source == mount.target:
            continue
        if mount.target.startswith(SECRETS_PREFIX):
            continue
        if not os.path.isdir(mount.source):
            continue
        if os.path.lexists(mount.target):
            continue
        try:
            os.makedirs(os.path.dirname(mount.target), mode=0o750, exist_ok=True)
        except OSError:
            continue
        try:
            os.symlink(mount.source, mount.target)
        except OSError as exc:
            raise RuntimeError(
                f"create symlink {mount.target} -> {mount.source}: {exc}"
            ) from exc
        created.append(mount.target)
    return created


def _read_pid(sandbox_path: str) -> int | None:
    try:
        with open(os.path.join(sandbox_path, PID_FILE_NAME), encoding="utf-8") as fh:
            return int(fh.read().strip())
    except (OSError, ValueError):
        return None


class SeatbeltRuntime(Runtime):
    """Runs sandbox instances as sandbox-exec processes on the host."""

    def __init__(
        self,
        sandbox_exec_bin: str,
        sandbox_dir: str,
        entrypoint: bytes = b"",
        tmux_conf: bytes = b"",
    ) -> None:
        self.sandbox_exec_bin = sandbox_exec_bin
        self.sandbox_dir = sandbox_dir
        self.entrypoint = entrypoint
        self.tmux_conf = tmux_conf

    def _sandbox_path(self, name: str) -> str:
        return os.path.join(self.sandbox_dir, sandbox_name(name))

    def ensure_image(self, source_dir: str, output: IO[str], force: bool) -> None:
        """Verify the host tools are present; there is no image to build."""
        for binary in REQUIRED_BINARIES:
            if shutil.which(binary) is None:
                raise RuntimeError(
                    f"{binary} not found in PATH: install it before using "
                    "the seatbelt backend"
                )
        output.write("Seatbelt prerequisites verified (sandbox-exec, tmux, jq).\n")

    def image_exists(self, image_ref: str) -> bool:
        """Return True when every required host tool is on PATH."""
        return all(shutil.which(binary) is not None for binary in REQUIRED_BINARIES)

    def create(self, cfg: InstanceConfig) -> None:
        """Prepare the sandbox directory: config, secrets, profile and scripts."""
        sandbox_path = self._sandbox_path(cfg.name)

        try:
            _write_file(
                os.path.join(sandbox_path, SEATBELT_CONFIG_FILE_NAME),
                json.dumps(cfg.to_dict()).encode(),
            )
        except OSError as exc:
            raise RuntimeError(f"write instance config: {exc}") from exc

        secrets_dir = os.path.join(sandbox_path, "secrets")
        try:
            os.makedirs(secrets_dir, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise RuntimeError(f"create secrets dir: {exc}") from exc
        for mount in cfg.mounts:
            if not mount.target.startswith(SECRETS_PREFIX):
                continue
            try:
                with open(mount.source, "rb") as fh:
                    data = fh.read()
            except OSError:
                continue
            key_name = os.path.basename(mount.target)
            try:
                _write_file(os.path.join(secrets_dir, key_name), data)
            except OSError as exc:
                raise RuntimeError(f"copy secret {key_name}: {exc}") from exc

        try:
            self._patch_config_working_dir(sandbox_path, cfg.mounts)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"patch config working dir: {exc}") from exc

        try:
            home_dir = str(Path.home())
        except RuntimeError:
            home_dir = ""
        profile = generate_profile(cfg, sandbox_path, home_dir)
        try:
            _write_file(os.path.join(sandbox_path, PROFILE_FILE_NAME), profile.encode())
        except OSError as exc:
            raise RuntimeError(f"write SBPL profile: {exc}") from exc

        try:
            _write_file(
                os.path.join(sandbox_path, "entrypoint.sh"), self.entrypoint, 0o755
            )
        except OSError as exc:
            raise RuntimeError(f"write entrypoint.sh: {exc}") from exc
        try:
            _write_file(os.path.join(sandbox_path, "tmux.conf"), self.tmux_conf)
        except OSError as exc:
            raise RuntimeError(f"write tmux.conf: {exc}") from exc

        try:
            symlinks = mount_symlinks(cfg.mounts)
        except RuntimeError as exc:
            raise RuntimeError(f"create mount symlinks: {exc}") from exc
        if symlinks:
            manifest = "\n".join(symlinks) + "\n"
            try:
                _write_file(
                    os.path.join(sandbox_path, SYMLINK_MANIFEST_NAME), manifest.encode()
                )
            except OSError as exc:
                raise RuntimeError(f"write symlink manifest: {exc}") from exc

    def start(self, name: str) -> None:
        """Launch the sandboxed entrypoint and wait for its tmux session."""
        sandbox_path = self._sandbox_path(name)
        if self._is_running(sandbox_path):
            return

        cfg_path = os.path.join(sandbox_path, SEATBELT_CONFIG_FILE_NAME)
        try:
            with open(cfg_path, "rb") as fh:
                cfg_data = fh.read()
        except OSError as exc:
            raise RuntimeError(f"read instance config: {exc}") from exc
        try:
            InstanceConfig.from_dict(json.loads(cfg_data))
        except (ValueError, AttributeError, TypeError) as exc:
            raise RuntimeError(f"parse instance config: {exc}") from exc

        log_path = os.path.join(sandbox_path, PROCESS_LOG_FILE_NAME)
        try:
            log_fd = os.open(log_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        except OSError as exc:
            raise RuntimeError(f"open log: {exc}") from exc

        profile_path = os.path.join(sandbox_path, PROFILE_FILE_NAME)
        entrypoint_path = os.path.join(sandbox_path, "entrypoint.sh")
        args = [
            self.sandbox_exec_bin,
            "-f",
            profile_path,
            "bash",
            entrypoint_path,
            sandbox_path,
        ]
        try:
            proc = subprocess.Popen(
                args,
                stdout=log_fd,
                stderr=log_fd,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise RuntimeError(f"start sandbox-exec: {exc}") from exc
        finally:
            os.close(log_fd)

        try:
            _write_file(os.path.join(sandbox_path, PID_FILE_NAME), str(proc.pid).encode())
        except OSError as exc:
            proc.kill()
            proc.wait()
            raise RuntimeError(f"write PID file: {exc}") from exc

        proc_done: queue.Queue[int] = queue.Queue(maxsize=1)
        threading.Thread(
            target=lambda: proc_done.put(proc.wait()), daemon=True
        ).start()

        try:
            self._wait_for_tmux(sandbox_path, proc_done)
        except RuntimeError as exc:
            self._kill_by_pid(sandbox_path)
            detail = (
                f"command: {self.sandbox_exec_bin} -f {profile_path} "
                f"bash {entrypoint_path} {sandbox_path}"
            )
            try:
                with open(log_path, "rb") as fh:
                    log_data = fh.read()
            except OSError:
                log_data = b""
            if log_data:
                text = log_data.decode(errors="replace").strip()
                detail += f"\nlog output:\n{text}"
            raise RuntimeError(f"wait for tmux session: {exc}\n{detail}") from exc

    def stop(self, name: str) -> None:
        """Kill the tmux server and the sandbox-exec process."""
        sandbox_path = self._sandbox_path(name)
        tmux_sock = os.path.join(sandbox_path, TMUX_SOCKET_NAME)
        if os.path.exists(tmux_sock):
            try:
                subprocess.run(
                    ["tmux", "-S", tmux_sock, "kill-server"],
                    capture_output=True,
                    check=False,
                )
            except OSError:
                pass
        self._kill_by_pid(sandbox_path)

    def remove(self, name: str) -> None:
        """Stop the instance and delete its seatbelt-specific files."""
        sandbox_path = self._sandbox_path(name)
        try:
            self.stop(name)
        except OSError:
            pass

        manifest_path = os.path.join(sandbox_path, SYMLINK_MANIFEST_NAME)
        try:
            with open(manifest_path, encoding="utf-8") as fh:
                links = fh.read().strip().split("\n")
        except OSError:
            links = []
        for link_path in filter(None, links):
            try:
                os.remove(link_path)
            except OSError:
                pass
            try:
                os.rmdir(os.path.dirname(link_path))
            except OSError:
                pass

        for file_name in (
            PID_FILE_NAME,
            PROFILE_FILE_NAME,
            SEATBELT_CONFIG_FILE_NAME,
            PROCESS_LOG_FILE_NAME,
            TMUX_SOCKET_NAME,
            "entrypoint.sh",
            "tmux.conf",
            SYMLINK_MANIFEST_NAME,
        ):
            try:
                os.remove(os.path.join(sandbox_path, file_name))
            except OSError:
                pass

        shutil.rmtree(os.path.join(sandbox_path, "secrets"), ignore_errors=True)

    def inspect(self, name: str) -> InstanceInfo:
        """Return whether the instance runs; raise NotFoundError without a PID file."""
        sandbox_path = self._sandbox_path(name)
        try:
            os.stat(os.path.join(sandbox_path, PID_FILE_NAME))
        except FileNotFoundError as exc:
            raise NotFoundError() from exc
        except OSError:
            pass
        return InstanceInfo(running=self._is_running(sandbox_path))

    def exec(self, name: str, cmd: Sequence[str], user: str) -> ExecResult:
        """Run a command in the running sandbox and capture its output."""
        sandbox_path = self._sandbox_path(name)
        if not self._is_running(sandbox_path):
            raise NotRunningError()
        command = self.build_exec_command(sandbox_path, cmd)
        return run_cmd_exec(command.args, cwd=command.cwd)

    def interactive_exec(
        self, name: str, cmd: Sequence[str], user: str, work_dir: str
    ) -> None:
        """Run a command in the sandbox attached to the current terminal."""
        command = self.build_exec_command(self._sandbox_path(name), cmd)
        try:
            proc = subprocess.run(command.args, cwd=command.cwd, check=False)
        except OSError as exc:
            raise ExecError(f"exec: {exc}") from exc
        if proc.returncode != 0:
            raise ExecError(f"exit status {proc.returncode}")

    def prune(
        self, known_instances: Sequence[str], dry_run: bool, output: IO[str]
    ) -> PruneResult:
        """Nothing to prune: seatbelt keeps no central instance registry."""
        return PruneResult()

    def close(self) -> None:
        """Nothing to release."""

    def diag_hint(self, instance_name: str) -> str:
        """Point at the sandbox-exec log file."""
        log_path = os.path.join(
            self.sandbox_dir, sandbox_name(instance_name), PROCESS_LOG_FILE_NAME
        )
        return f"check log at {log_path}"

    def build_exec_command(self, sandbox_path: str, cmd: Sequence[str]) -> Command:
        """Build the command line for running ``cmd`` in the sandbox.

        tmux commands get the per-sandbox socket; anything else runs under
        sandbox-exec in the working directory recorded in config.json.
        """
        if cmd and cmd[0] == "tmux":
            return self.build_tmux_command(sandbox_path, cmd)

        profile_path = os.path.join(sandbox_path, PROFILE_FILE_NAME)
        command = Command([self.sandbox_exec_bin, "-f", profile_path, *cmd])

        try:
            with open(os.path.join(sandbox_path, "config.json"), "rb") as fh:
                raw = json.loads(fh.read())
        except (OSError, ValueError):
            raw = None
        if isinstance(raw, dict):
            working_dir = raw.get("working_dir")
            if isinstance(working_dir, str) and working_dir:
                command.cwd = working_dir
        return command

    def build_tmux_command(self, sandbox_path: str, cmd: Sequence[str]) -> Command:
        """Insert the per-sandbox socket into a tmux command line."""
        tmux_sock = os.path.join(sandbox_path, TMUX_SOCKET_NAME)
        return Command(["tmux", "-S", tmux_sock, *cmd[1:]])

    def _is_running(self, sandbox_path: str) -> bool:
        pid = _read_pid(sandbox_path)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except (OSError, OverflowError):
            return False
        return True

    def _kill_by_pid(self, sandbox_path: str) -> None:
        pid = _read_pid(sandbox_path)
        if pid is None:
            return
        try:
            os.killpg(pid, signal.SIGTERM)
        except (OSError, OverflowError):
            pass
        try:
            os.kill(pid, signal.SIGTERM)
        except (OSError, OverflowError):
            pass
        try:
            os.remove(os.path.join(sandbox_path, PID_FILE_NAME))
        except OSError:
            pass

    def _wait_for_tmux(self, sandbox_path: str, proc_done: queue.Queue[int]) -> None:
        tmux_sock = os.path.join(sandbox_path, TMUX_SOCKET_NAME)
        deadline = time.monotonic() + _TMUX_WAIT_TIMEOUT

        def check_exit(timeout: float | None) -> None:
            try:
                code = (
                    proc_done.get(timeout=timeout)
                    if timeout
                    else proc_done.get_nowait()
                )
            except queue.Empty:
                return
            if code != 0:
                raise RuntimeError(f"sandbox-exec exited: exit status {code}")
            raise RuntimeError("sandbox-exec exited unexpectedly")

        while True:
            if time.monotonic() > deadline:
                raise RuntimeError("tmux session did not appear within 30s")
            check_exit(None)
            try:
                check = subprocess.run(
                    ["tmux", "-S", tmux_sock, "has-session", "-t", "main"],
                    capture_output=True,
                    check=False,
                )
                if check.returncode == 0:
                    return
            except OSError:
                pass
            check_exit(_TMUX_POLL_INTERVAL)

    def _patch_config_working_dir(
        self, sandbox_path: str, mounts: Sequence[MountSpec]
    ) -> None:
        """Point config.json's working_dir at the copy for :copy workdirs."""
        work_prefix = os.path.join(sandbox_path, "work") + "/"
        copy_source = next(
            (
                m.source
                for m in mounts
                if not m.read_only and m.source.startswith(work_prefix)
            ),
            "",
        )
        if not copy_source:
            return

        cfg_path = os.path.join(sandbox_path, "config.json")
        with open(cfg_path, "rb") as fh:
            raw = json.loads(fh.read())
        if not isinstance(raw, dict):
            raise ValueError("config.json is not a JSON object")

        working_dir = raw.get("working_dir")
        if isinstance(working_dir, str) and working_dir != copy_source:
            raw["working_dir"] = copy_source
            _write_file(cfg_path, json.dumps(raw, indent=2, sort_keys=True).encode())


def create_seatbelt_runtime(
    entrypoint: bytes = b"", tmux_conf: bytes = b""
) -> SeatbeltRuntime:
    """Create a seatbelt runtime after checking for macOS and sandbox-exec."""
    if not is_macos():
        raise RuntimeError("seatbelt backend requires macOS")
    sandbox_exec_bin = shutil.which("sandbox-exec")
    if sandbox_exec_bin is None:
        raise RuntimeError("sandbox-exec not found: not in PATH")
    try:
        home_dir = str(Path.home())
    except RuntimeError as exc:
        raise RuntimeError(f"get home directory: {exc}") from exc
    return SeatbeltRuntime(
        sandbox_exec_bin,
        os.path.join(home_dir, ".yoloai", "sandboxes"),
        entrypoint,
        tmux_conf,
    )