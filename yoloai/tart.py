"""Sandbox backend that runs agents inside macOS VMs managed by the tart CLI."""

from __future__ import annotations

import json
import logging
import os
import posixpath
import queue
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from typing import IO, Sequence

from yoloai.runtime import (
    ExecError,
    ExecResult,
    InstanceConfig,
    InstanceInfo,
    MountSpec,
    NotFoundError,
    NotRunningError,
    PruneItem,
    PruneResult,
    Runtime,
    is_apple_silicon,
    is_macos,
    run_cmd_exec,
)
from yoloai.tart_args import (
    INSTANCE_PREFIX,
    SHARED_DIR_NAME,
    SHARED_DIR_VM_PATH,
    build_run_args,
    exec_args,
    is_fatal_exec_error,
    map_tart_error,
    mount_dir_name,
    remap_target_path,
    sandbox_name,
)

logger = logging.getLogger(__name__)

PID_FILE_NAME = "tart.pid"
VM_LOG_FILE_NAME = "vm.log"
TART_CONFIG_FILE_NAME = "tart-instance.json"

DEFAULT_BASE_IMAGE = "ghcr.io/cirruslabs/macos-sequoia-base:latest"
PROVISIONED_IMAGE_NAME = "yoloai-base"
PROVISION_MARKER_FILE = ".tart-provisioned"

BOOT_TIMEOUT = 5 * 60.0
BOOT_POLL_INTERVAL = 2.0

PROVISION_COMMANDS = (
    # Accept the Xcode licence and install the command line tools.
    "sudo xcode-select --install 2>/dev/null || true",
    # The base image is expected to ship with Homebrew.
    "test -x /opt/homebrew/bin/brew || which brew >/dev/null 2>&1 "
    "|| { echo 'Homebrew is required in the base VM image' >&2; exit 1; }",
    'eval "$(/opt/homebrew/bin/brew shellenv)" && brew install node tmux jq ripgrep',
    'eval "$(/opt/homebrew/bin/brew shellenv)" && '
    "npm install -g @anthropic-ai/claude-code",
    "grep -q 'brew shellenv' ~/.zprofile 2>/dev/null || "
    "echo 'eval \"$(/opt/homebrew/bin/brew shellenv)\"' >> ~/.zprofile",
)

_TART_ERRORS = (NotFoundError, NotRunningError, ExecError)


def _write_file(path: str, data: bytes, mode: int = 0o600) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs}s" if minutes else f"{secs}s"


def _watch(proc: subprocess.Popen) -> queue.Queue[int]:
    """Return a queue that receives the exit code of ``proc`` once it ends."""
    done: queue.Queue[int] = queue.Queue(maxsize=1)
    threading.Thread(target=lambda: done.put(proc.wait()), daemon=True).start()
    return done


class TartRuntime(Runtime):
    """Runs sandbox instances as Tart virtual machines."""

    boot_timeout = BOOT_TIMEOUT
    boot_poll_interval = BOOT_POLL_INTERVAL

    def __init__(
        self,
        tart_bin: str,
        sandbox_dir: str,
        setup_script: bytes = b"",
        tmux_conf: bytes = b"",
        base_image_override: str = "",
    ) -> None:
        self.tart_bin = tart_bin
        self.sandbox_dir = sandbox_dir
        self.setup_script = setup_script
        self.tmux_conf = tmux_conf
        self.base_image_override = base_image_override

    def _sandbox_path(self, name: str) -> str:
        return os.path.join(self.sandbox_dir, sandbox_name(name))

    # --- images ---

    def resolve_base_image(self) -> str:
        """The base image to provision from: the override, else the default."""
        return self.base_image_override or DEFAULT_BASE_IMAGE

    def ensure_image(self, source_dir: str, output: IO[str], force: bool) -> None:
        """Pull and provision the base VM image unless it is already ready."""
        if not force:
            try:
                exists = self.image_exists(PROVISIONED_IMAGE_NAME)
            except RuntimeError as exc:
                raise RuntimeError(f"check base image: {exc}") from exc
            if exists and self._is_provisioned(source_dir):
                return

        base_image = self.resolve_base_image()
        try:
            base_exists = self.image_exists(base_image)
        except RuntimeError as exc:
            raise RuntimeError(f"check base image: {exc}") from exc

        if not base_exists:
            output.write(f"Pulling base macOS VM image ({base_image})...\n")
            output.write("This is a one-time download (~30 GB) and may take a while.\n")
            try:
                code = self._stream([self.tart_bin, "pull", base_image], output)
            except RuntimeError as exc:
                raise RuntimeError(f"pull base image: {exc}") from exc
            if code != 0:
                raise RuntimeError(f"pull base image: exit status {code}")

        try:
            prov_exists = self.image_exists(PROVISIONED_IMAGE_NAME)
        except RuntimeError:
            prov_exists = False
        if prov_exists:
            output.write("Removing old provisioned image...\n")
            try:
                self._run_tart("delete", PROVISIONED_IMAGE_NAME)
            except _TART_ERRORS as exc:
                logger.warning("failed to delete old provisioned image: %s", exc)

        output.write("Cloning base image for provisioning...\n")
        try:
            self._run_tart("clone", base_image, PROVISIONED_IMAGE_NAME)
        except _TART_ERRORS as exc:
            raise RuntimeError(f"clone base image: {exc}") from exc

        output.write("Booting VM for provisioning (installing dev tools)...\n")
        try:
            self._boot_for_provisioning(PROVISIONED_IMAGE_NAME, output)
        except RuntimeError as exc:
            try:
                self._run_tart("delete", PROVISIONED_IMAGE_NAME)
            except _TART_ERRORS:
                pass
            raise RuntimeError(f"provision VM: {exc}") from exc

        try:
            _write_file(os.path.join(source_dir, PROVISION_MARKER_FILE), b"1")
        except OSError:
            pass

        output.write("Base VM image provisioned successfully.\n")

    def image_exists(self, image_ref: str) -> bool:
        """Return whether a VM with this name is in tart's inventory."""
        try:
            out = self._run_tart("list", "--quiet")
        except _TART_ERRORS as exc:
            raise RuntimeError(f"list VMs: {exc}") from exc
        return any(line.strip() == image_ref for line in out.split("\n"))

    def _is_provisioned(self, source_dir: str) -> bool:
        return os.path.exists(os.path.join(source_dir, PROVISION_MARKER_FILE))

    def _stream(self, args: Sequence[str], output: IO[str]) -> int:
        """Run a command, copying its combined output to ``output``."""
        try:
            proc = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise RuntimeError(f"exec: {exc}") from exc
        assert proc.stdout is not None
        with proc.stdout:
            for line in proc.stdout:
                output.write(line)
        return proc.wait()

    def _boot_for_provisioning(self, vm_name: str, output: IO[str]) -> None:
        fd, log_path = tempfile.mkstemp(prefix="yoloai-tart-", suffix=".log")
        try:
            try:
                proc = subprocess.Popen(
                    [self.tart_bin, "run", "--no-graphics", vm_name],
                    stdout=fd,
                    stderr=fd,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as exc:
                raise RuntimeError(f"start VM for provisioning: {exc}") from exc
            finally:
                os.close(fd)

            proc_done = _watch(proc)
            try:
                output.write("Waiting for VM to boot (macOS VMs can take 30-60s)...\n")
                try:
                    self._wait_for_boot(vm_name, proc_done)
                except RuntimeError as exc:
                    try:
                        with open(log_path, "rb") as fh:
                            log_data = fh.read()
                    except OSError:
                        log_data = b""
                    if log_data:
                        text = log_data.decode(errors="replace")
                        output.write(f"tart run output:\n{text}\n")
                    raise RuntimeError(f"vm did not become accessible: {exc}") from exc

                total = len(PROVISION_COMMANDS)
                for step, cmd_str in enumerate(PROVISION_COMMANDS, 1):
                    output.write(f"Provisioning step {step}/{total}...\n")
                    logger.debug("provisioning step %d: %s", step, cmd_str)
                    args = [self.tart_bin, *exec_args(vm_name, "bash", "-c", cmd_str)]
                    try:
                        code = self._stream(args, output)
                    except RuntimeError as exc:
                        raise RuntimeError(
                            f"provision step {step} failed: {exc}"
                        ) from exc
                    if code != 0:
                        raise RuntimeError(
                            f"provision step {step} failed: exit status {code}"
                        )
            finally:
                logger.debug("stopping provisioning VM %s", vm_name)
                try:
                    stopped = (
                        subprocess.run(
                            [self.tart_bin, "stop", vm_name],
                            capture_output=True,
                            check=False,
                        ).returncode
                        == 0
                    )
                except OSError:
                    stopped = False
                if not stopped:
                    proc.kill()
        finally:
            try:
                os.remove(log_path)
            except OSError:
                pass

    # --- lifecycle ---

    def create(self, cfg: InstanceConfig) -> None:
        """Clone the base image into a new VM and save the instance config."""
        self._stop_vm(cfg.name)
        if self._vm_exists(cfg.name):
            try:
                self._run_tart("delete", cfg.name)
            except _TART_ERRORS as exc:
                raise RuntimeError(f"remove existing VM: {exc}") from exc

        try:
            self._run_tart("clone", cfg.image_ref, cfg.name)
        except _TART_ERRORS as exc:
            raise RuntimeError(f"clone VM: {exc}") from exc

        sandbox_path = self._sandbox_path(cfg.name)
        try:
            _write_file(
                os.path.join(sandbox_path, TART_CONFIG_FILE_NAME),
                json.dumps(cfg.to_dict()).encode(),
            )
        except OSError as exc:
            raise RuntimeError(f"write instance config: {exc}") from exc

    def start(self, name: str) -> None:
        """Boot the VM in the background, then run the setup script in it."""
        sandbox_path = self._sandbox_path(name)
        if self._is_running(name):
            return

        cfg_path = os.path.join(sandbox_path, TART_CONFIG_FILE_NAME)
        try:
            with open(cfg_path, "rb") as fh:
                cfg_data = fh.read()
        except OSError as exc:
            raise RuntimeError(f"read instance config: {exc}") from exc
        try:
            cfg = InstanceConfig.from_dict(json.loads(cfg_data))
        except (ValueError, AttributeError, TypeError) as exc:
            raise RuntimeError(f"parse instance config: {exc}") from exc

        args = build_run_args(name, sandbox_path, cfg.mounts)

        log_path = os.path.join(sandbox_path, VM_LOG_FILE_NAME)
        try:
            log_fd = os.open(log_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        except OSError as exc:
            raise RuntimeError(f"open VM log: {exc}") from exc

        try:
            proc = subprocess.Popen(
                [self.tart_bin, *args],
                stdout=log_fd,
                stderr=log_fd,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise RuntimeError(f"start VM: {exc}") from exc
        finally:
            os.close(log_fd)

        try:
            _write_file(os.path.join(sandbox_path, PID_FILE_NAME), str(proc.pid).encode())
        except OSError as exc:
            proc.kill()
            proc.wait()
            raise RuntimeError(f"write PID file: {exc}") from exc

        proc_done = _watch(proc)

        try:
            self._wait_for_boot(name, proc_done)
        except RuntimeError as exc:
            self._kill_by_pid(sandbox_path)
            detail = f"command: {self.tart_bin} {' '.join(args)}"
            try:
                with open(log_path, "rb") as fh:
                    log_data = fh.read()
            except OSError:
                log_data = b""
            if log_data:
                text = log_data.decode(errors="replace").strip()
                detail += f"\nVM log output:\n{text}"
            raise RuntimeError(f"wait for VM boot: {exc}\n{detail}") from exc

        try:
            self._run_setup_script(name, sandbox_path, cfg.mounts)
        except RuntimeError as exc:
            raise RuntimeError(f"run setup script: {exc}") from exc

    def stop(self, name: str) -> None:
        """Stop the VM and any stray ``tart run`` processes for it."""
        self._stop_vm(name)

    def remove(self, name: str) -> None:
        """Stop and delete the VM and its PID file."""
        pid_path = os.path.join(self._sandbox_path(name), PID_FILE_NAME)
        self.stop(name)

        if self._vm_exists(name):
            try:
                self._run_tart("delete", name)
            except _TART_ERRORS as exc:
                raise RuntimeError(f"delete VM: {exc}") from exc

        try:
            os.remove(pid_path)
        except OSError:
            pass

    def inspect(self, name: str) -> InstanceInfo:
        """Return whether the VM runs; raise NotFoundError if it does not exist."""
        if not self._vm_exists(name):
            raise NotFoundError()
        return InstanceInfo(running=self._is_running(name))

    def exec(self, name: str, cmd: Sequence[str], user: str) -> ExecResult:
        """Run a command in the VM as its logged-in user; ``user`` is ignored."""
        if not self._is_running(name):
            raise NotRunningError()
        return run_cmd_exec([self.tart_bin, *exec_args(name, *cmd)])

    def interactive_exec(
        self, name: str, cmd: Sequence[str], user: str, work_dir: str
    ) -> None:
        """Run a command in the VM with a PTY attached to the terminal."""
        args = [self.tart_bin, "exec", "-i", "-t", name, *cmd]
        try:
            proc = subprocess.run(args, check=False)
        except OSError as exc:
            raise ExecError(f"exec: {exc}") from exc
        if proc.returncode != 0:
            raise ExecError(f"exit status {proc.returncode}")

    def prune(
        self, known_instances: Sequence[str], dry_run: bool, output: IO[str]
    ) -> PruneResult:
        """Delete yoloai-* VMs that are not among ``known_instances``."""
        known = set(known_instances)
        try:
            out = self._run_tart("list", "--quiet")
        except _TART_ERRORS as exc:
            raise RuntimeError(f"list VMs: {exc}") from exc

        result = PruneResult()
        for line in out.split("\n"):
            name = line.strip()
            if not name.startswith(INSTANCE_PREFIX) or name in known:
                continue
            result.items.append(PruneItem(kind="vm", name=name))
            if not dry_run:
                try:
                    self._run_tart("delete", name)
                except _TART_ERRORS as exc:
                    output.write(f"Warning: failed to delete VM {name}: {exc}\n")
        return result

    def close(self) -> None:
        """Nothing to release."""

    def diag_hint(self, instance_name: str) -> str:
        """Point at the VM log file."""
        log_path = os.path.join(
            self.sandbox_dir, sandbox_name(instance_name), VM_LOG_FILE_NAME
        )
        return f"check VM log at {log_path}"

    # --- internals ---

    def _run_tart(self, *args: str) -> str:
        """Run tart and return its trimmed stdout, raising a mapped error."""
        try:
            proc = subprocess.run(
                [self.tart_bin, *args],
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            raise ExecError(f"exec: {exc}") from exc
        if proc.returncode != 0:
            raise map_tart_error(
                ExecError(f"exit status {proc.returncode}"), proc.stderr.strip()
            )
        return proc.stdout.strip()

    def _vm_exists(self, vm_name: str) -> bool:
        try:
            out = self._run_tart("list", "--quiet")
        except _TART_ERRORS:
            return False
        return any(line.strip() == vm_name for line in out.split("\n"))

    def _is_running(self, vm_name: str) -> bool:
        try:
            proc = subprocess.run(
                [self.tart_bin, *exec_args(vm_name, "true")],
                capture_output=True,
                check=False,
            )
        except OSError:
            return False
        return proc.returncode == 0

    def _wait_for_boot(self, vm_name: str, proc_done: queue.Queue[int]) -> None:
        deadline = time.monotonic() + self.boot_timeout
        last_err = ""

        def check_exit(timeout: float | None) -> None:
            try:
                code = (
                    proc_done.get_nowait()
                    if timeout is None
                    else proc_done.get(timeout=timeout)
                )
            except queue.Empty:
                return
            if code != 0:
                raise RuntimeError(f"tart run exited: exit status {code}")
            raise RuntimeError("tart run exited unexpectedly with no error")

        while True:
            if time.monotonic() > deadline:
                message = (
                    "vm did not become accessible within "
                    f"{_format_duration(self.boot_timeout)}"
                )
                if last_err:
                    message += f": {last_err}"
                raise RuntimeError(message)

            check_exit(None)

            try:
                proc = subprocess.run(
                    [self.tart_bin, *exec_args(vm_name, "true")],
                    capture_output=True,
                    text=True,
                    errors="replace",
                    check=False,
                )
            except OSError as exc:
                last_err = f"exec: {exc}: "
            else:
                if proc.returncode == 0:
                    return
                stderr = proc.stderr.strip()
                last_err = f"exit status {proc.returncode}: {stderr}"
                if is_fatal_exec_error(stderr):
                    raise RuntimeError(f"tart exec failed: {last_err}")

            check_exit(self.boot_poll_interval)

    def _run_setup_script(
        self, vm_name: str, sandbox_path: str, mounts: Sequence[MountSpec]
    ) -> None:
        vm_shared_dir = posixpath.join(SHARED_DIR_VM_PATH, SHARED_DIR_NAME)

        for mount in mounts:
            target = remap_target_path(mount.target)
            if mount.source.startswith(sandbox_path + "/"):
                rel_path = mount.source[len(sandbox_path) + 1 :]
                vfs_path = posixpath.normpath(posixpath.join(vm_shared_dir, rel_path))
            elif mount.source == sandbox_path:
                vfs_path = vm_shared_dir
            elif os.path.isdir(mount.source):
                vfs_path = posixpath.join(
                    SHARED_DIR_VM_PATH, mount_dir_name(mount.source)
                )
            else:
                continue

            target = target.rstrip("/")
            if vfs_path == target:
                continue
            parent = posixpath.normpath(posixpath.dirname(target) or ".")
            symlink_cmd = (
                f"mkdir -p '{parent}' && rm -rf '{target}' && "
                f"ln -sfn '{vfs_path}' '{target}'"
            )
            try:
                self._run_tart(*exec_args(vm_name, "bash", "-c", symlink_cmd))
            except _TART_ERRORS as exc:
                raise RuntimeError(f"create mount symlink for {target}: {exc}") from exc

        try:
            self._patch_config_working_dir(sandbox_path)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"patch config working dir: {exc}") from exc

        try:
            _write_file(
                os.path.join(sandbox_path, "setup.sh"), self.setup_script, 0o755
            )
        except OSError as exc:
            raise RuntimeError(f"write setup script: {exc}") from exc
        try:
            _write_file(os.path.join(sandbox_path, "tmux.conf"), self.tmux_conf)
        except OSError as exc:
            raise RuntimeError(f"write tmux.conf: {exc}") from exc

        setup_cmd = (
            f"nohup '{vm_shared_dir}/setup.sh' '{vm_shared_dir}' "
            f"</dev/null >'{vm_shared_dir}/setup.log' 2>&1 &"
        )
        try:
            self._run_tart(*exec_args(vm_name, "bash", "-c", setup_cmd))
        except _TART_ERRORS as exc:
            raise RuntimeError(f"exec setup script: {exc}") from exc

    def _patch_config_working_dir(self, sandbox_path: str) -> None:
        """Remap config.json's working_dir to its path inside the VM."""
        cfg_path = os.path.join(sandbox_path, "config.json")
        with open(cfg_path, "rb") as fh:
            raw = json.loads(fh.read())
        if not isinstance(raw, dict):
            raise ValueError("config.json is not a JSON object")
        working_dir = raw.get("working_dir")
        if isinstance(working_dir, str):
            remapped = remap_target_path(working_dir)
            if remapped != working_dir:
                raw["working_dir"] = remapped
                _write_file(
                    cfg_path, json.dumps(raw, indent=2, sort_keys=True).encode()
                )

    def _stop_vm(self, vm_name: str) -> None:
        try:
            self._run_tart("stop", vm_name)
        except _TART_ERRORS:
            pass

        try:
            proc = subprocess.run(
                ["pgrep", "-f", f"tart run.*{vm_name}"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            return
        if proc.returncode != 0:
            return
        for line in proc.stdout.strip().split("\n"):
            try:
                pid = int(line.strip())
            except ValueError:
                continue
            try:
                os.kill(pid, signal.SIGTERM)
            except (OSError, OverflowError):
                pass

    def _kill_by_pid(self, sandbox_path: str) -> None:
        pid_path = os.path.join(sandbox_path, PID_FILE_NAME)
        try:
            with open(pid_path, encoding="utf-8") as fh:
                pid = int(fh.read().strip())
        except (OSError, ValueError):
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except (OSError, OverflowError):
            pass
        try:
            os.remove(pid_path)
        except OSError:
            pass


def create_tart_runtime(
    setup_script: bytes = b"",
    tmux_conf: bytes = b"",
    base_image_override: str = "",
) -> TartRuntime:
    """Create a Tart runtime after checking for tart and Apple Silicon macOS."""
    tart_bin = shutil.which("tart")
    if tart_bin is None:
        raise RuntimeError(
            "tart is not installed. Install it with: brew install cirruslabs/cli/tart"
        )
    if not is_macos():
        raise RuntimeError("tart backend requires macOS with Apple Silicon")
    if not is_apple_silicon():
        raise RuntimeError("tart backend requires Apple Silicon (M1 or later)")
    home_dir = os.path.expanduser("~")
    if home_dir == "~":
        raise RuntimeError("get home directory: cannot determine home directory")
    return TartRuntime(
        tart_bin,
        os.path.join(home_dir, ".yoloai", "sandboxes"),
        setup_script,
        tmux_conf,
        base_image_override,
    )