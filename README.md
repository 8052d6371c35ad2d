# yoloai

Building blocks for running coding agents inside isolated sandboxes, and for
bringing their work back to your own repository once you have reviewed it.

## Modules

- `yoloai.runtime` – the abstract `Runtime` class that every backend
  implements (`ensure_image`, `image_exists`, `create`, `start`, `stop`,
  `remove`, `inspect`, `exec`, `interactive_exec`, `prune`, `close`,
  `diag_hint`; it is also a context manager that calls `close`). It defines
  the dataclasses `InstanceConfig` (with `to_dict` / `from_dict`),
  `MountSpec`, `PortMapping`, `ResourceLimits`, `InstanceInfo`, `ExecResult`,
  `PruneItem` and `PruneResult`, and the errors `NotFoundError`,
  `NotRunningError` and `ExecError`. `run_cmd_exec(cmd, cwd)` runs a command
  and returns its trimmed stdout and exit code, raising `ExecError` on a
  non-zero exit. `is_macos()` and `is_apple_silicon()` detect the platform.
- `yoloai.seatbelt_profile` – `generate_profile(cfg, sandbox_dir, home_dir)`
  builds a `sandbox-exec` SBPL profile: deny by default, read access to system
  paths (`system_read_paths()`), read-write to temp paths (`temp_paths()`) and
  the sandbox directory, per-mount rules, read access to the home directory,
  and network access unless `network_mode` is `"none"`.
- `yoloai.seatbelt` – `SeatbeltRuntime`, a backend that runs the agent as a
  `sandbox-exec` process on the host with a per-sandbox tmux socket.
  `create_seatbelt_runtime(entrypoint, tmux_conf)` checks for macOS and
  `sandbox-exec`. `mount_symlinks(mounts)` links mount targets to their
  sources; `sandbox_name(instance_name)` strips the `yoloai-` prefix.
- `yoloai.tart_args` – argument building for the `tart` CLI: `exec_args`,
  `build_run_args`, `build_network_args`, `port_forward_args`,
  `build_mount_symlink_cmds`, `mount_dir_name`, `remap_target_path`,
  `is_fatal_exec_error` and `map_tart_error`.
- `yoloai.tart` – `TartRuntime`, a backend that runs the agent in a macOS VM
  managed by `tart`, including pulling and provisioning the base image.
  `create_tart_runtime(setup_script, tmux_conf, base_image_override)` checks
  for `tart` and Apple Silicon macOS.
- `yoloai.docker_build` – Docker image resource handling:
  `seed_resources(target_dir, resources)` writes resource files while keeping
  local edits (new versions go to `<name>.new` and are reported in
  `SeedResult.conflicts`); `needs_build`, `record_build_checksum` and
  `build_inputs_checksum` track when `Dockerfile`, `entrypoint.sh` and
  `tmux.conf` changed; `profile_image_needs_build`,
  `record_profile_build_checksum` and `profile_build_checksum` do the same for
  profile images; `create_build_context` and `create_profile_build_context`
  return tar archives as bytes; `stream_build_output` copies the `stream`
  fields of Docker build JSON output and raises `BuildError` on an `error`.
- `yoloai.apply` – git helpers for applying an agent's work:
  `list_commits_beyond_baseline`, `resolve_ref`, `resolve_refs` (short SHAs
  and `a..b` ranges), `contiguous_prefix_end`, `generate_format_patch`,
  `generate_format_patch_for_refs`, `apply_format_patch` (`git am --3way`),
  `check_patch` and `apply_patch` (`git apply`, also for non-git target
  directories), `is_git_repo`, `format_apply_error` and `format_am_error`.
  Failures raise `ApplyError`.

## Installation

```
pip install .
```

The code calls external tools: `git` for `yoloai.apply`; `sandbox-exec`,
`tmux` and `jq` for the seatbelt backend; `tart` (and `pgrep`) for the VM
backend.

## Examples

Generate a seatbelt profile:

```python
from yoloai.runtime import InstanceConfig, MountSpec
from yoloai.seatbelt_profile import generate_profile

cfg = InstanceConfig(
    name="yoloai-demo",
    mounts=[MountSpec(source="/path/to/work", target="/path/to/work")],
    network_mode="none",
)
print(generate_profile(cfg, "/tmp/sandbox", "/Users/me"))
```

Apply an agent's commits to your repository:

```python
import shutil
from yoloai.apply import (
    apply_format_patch,
    generate_format_patch,
    list_commits_beyond_baseline,
)

commits = list_commits_beyond_baseline(work_dir, baseline_sha)
patch_dir, files = generate_format_patch(work_dir, baseline_sha, [])
try:
    apply_format_patch(patch_dir, files, "/path/to/my/repo")
finally:
    shutil.rmtree(patch_dir, ignore_errors=True)
```

A failed `git am` is raised as `ApplyError` whose message explains how to
continue, skip or abort.

## What it does not do

- There is no command-line program; everything is a library call.
- There is no Docker backend that talks to a Docker daemon. `docker_build`
  prepares resources, checksums and build contexts, and parses build output,
  but does not create containers or start builds.
- No resource files are bundled. The Dockerfile, entrypoint scripts, tmux
  configuration and Tart setup script are passed in as bytes by the caller.
- There is no sandbox state storage. The `apply` functions take a work-copy
  directory and a baseline SHA directly, and nothing records or advances a
  baseline for you.

## Running the tests

```
pip install .[test]
pytest
```