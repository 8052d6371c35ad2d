"""Backend-neutral types, errors and helpers shared by sandbox runtimes."""

from __future__ import annotations

import abc
import platform
import subprocess
from dataclasses import asdict, dataclass, field
from typing import IO, Any, Mapping, Sequence


class NotFoundError(LookupError):
    """The requested sandbox instance does not exist."""

    def __init__(self, message: str = "instance not found") -> None:
        super().__init__(message)


class NotRunningError(RuntimeError):
    """The requested sandbox instance exists but is not running."""

    def __init__(self, message: str = "instance not running") -> None:
        super().__init__(message)


class ExecError(Exception):
    """A command could not be run or exited with a non-zero status.

    ``result`` holds the captured output when the command did run.
    """

    def __init__(self, message: str, result: ExecResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class PruneItem:
    """A single orphaned resource found during pruning."""

    kind: str
    name: str


@dataclass
class PruneResult:
    """Orphaned resources found by a backend."""

    items: list[PruneItem] = field(default_factory=list)


@dataclass
class MountSpec:
    """A bind mount from the host into the sandbox instance."""

    source: str
    target: str
    read_only: bool = False


@dataclass
class PortMapping:
    """A port forwarded from the host to the sandbox instance."""

    host_port: str
    instance_port: str
    protocol: str = ""


@dataclass
class ResourceLimits:
    """Resource constraints: CPUs in nano-CPUs (cpus * 1e9), memory in bytes."""

    nano_cpus: int = 0
    memory: int = 0


@dataclass
class InstanceConfig:
    """Parameters for creating a sandbox instance."""

    name: str = ""
    image_ref: str = ""
    working_dir: str = ""
    mounts: list[MountSpec] = field(default_factory=list)
    ports: list[PortMapping] = field(default_factory=list)
    network_mode: str = ""
    cap_add: list[str] = field(default_factory=list)
    use_init: bool = False
    resources: ResourceLimits | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary of this configuration."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InstanceConfig:
        """Build a configuration from a dictionary made by :meth:`to_dict`."""
        resources = data.get("resources")
        return cls(
            name=data.get("name", ""),
            image_ref=data.get("image_ref", ""),
            working_dir=data.get("working_dir", ""),
            mounts=[
                MountSpec(
                    source=m.get("source", ""),
                    target=m.get("target", ""),
                    read_only=bool(m.get("read_only", False)),
                )
                for m in data.get("mounts") or []
            ],
            ports=[
                PortMapping(
                    host_port=p.get("host_port", ""),
                    instance_port=p.get("instance_port", ""),
                    protocol=p.get("protocol", ""),
                )
                for p in data.get("ports") or []
            ],
            network_mode=data.get("network_mode", ""),
            cap_add=list(data.get("cap_add") or []),
            use_init=bool(data.get("use_init", False)),
            resources=(
                ResourceLimits(
                    nano_cpus=int(resources.get("nano_cpus", 0)),
                    memory=int(resources.get("memory", 0)),
                )
                if resources is not None
                else None
            ),
        )


@dataclass
class InstanceInfo:
    """Inspected state of a sandbox instance."""

    running: bool = False


@dataclass
class ExecResult:
    """Output of a non-interactive command execution."""

    stdout: str = ""
    exit_code: int = 0


class Runtime(abc.ABC):
    """A sandbox backend managing instance lifecycles and images."""

    @abc.abstractmethod
    def ensure_image(self, source_dir: str, output: IO[str], force: bool) -> None:
        """Make sure the base image is ready, writing progress to ``output``."""

    @abc.abstractmethod
    def image_exists(self, image_ref: str) -> bool:
        """Return whether the given image reference exists locally."""

    @abc.abstractmethod
    def create(self, cfg: InstanceConfig) -> None:
        """Create a new sandbox instance."""

    @abc.abstractmethod
    def start(self, name: str) -> None:
        """Start a created or stopped instance."""

    @abc.abstractmethod
    def stop(self, name: str) -> None:
        """Stop a running instance; does nothing if already stopped."""

    @abc.abstractmethod
    def remove(self, name: str) -> None:
        """Remove an instance; does nothing if already removed."""

    @abc.abstractmethod
    def inspect(self, name: str) -> InstanceInfo:
        """Return the instance state; raise NotFoundError if it does not exist."""

    @abc.abstractmethod
    def exec(self, name: str, cmd: Sequence[str], user: str) -> ExecResult:
        """Run a command inside a running instance."""

    @abc.abstractmethod
    def interactive_exec(
        self, name: str, cmd: Sequence[str], user: str, work_dir: str
    ) -> None:
        """Run a command attached to the current terminal."""

    @abc.abstractmethod
    def prune(
        self, known_instances: Sequence[str], dry_run: bool, output: IO[str]
    ) -> PruneResult:
        """Remove yoloai-* resources not listed in ``known_instances``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources held by the runtime."""

    @abc.abstractmethod
    def diag_hint(self, instance_name: str) -> str:
        """Return a hint on where to look when an instance fails."""

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def run_cmd_exec(cmd: Sequence[str], cwd: str | None = None) -> ExecResult:
    """Run ``cmd``, capturing output.

    Raises ExecError carrying the result on a non-zero exit, and ExecError
    without a result when the command cannot be started at all.
    """
    try:
        proc = subprocess.run(
            list(cmd),
            cwd=cwd or None,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ExecError(f"exec: {exc}") from exc

    result = ExecResult(stdout=proc.stdout.strip(), exit_code=proc.returncode)
    if proc.returncode != 0:
        raise ExecError(
            f"exec exited with code {proc.returncode}: {proc.stderr.strip()}",
            result,
        )
    return result


def is_macos() -> bool:
    """Return True when running on macOS."""
    return platform.system() == "Darwin"


def is_apple_silicon() -> bool:
    """Return True when running on macOS on Apple Silicon."""
    return is_macos() and platform.machine() == "arm64"