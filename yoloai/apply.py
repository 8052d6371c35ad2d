"""Moving sandbox work-copy changes back to the host with git patches."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable, Collection, Iterable, Mapping, Sequence, TypeVar

_T = TypeVar("_T")

_RE_PATCH_FAILED = re.compile(r"error: patch failed: ([^:]+):(\d+)")
_RE_DOES_NOT_EXIST = re.compile(r"error: ([^:]+): does not exist in working directory")
_RE_ALREADY_EXISTS = re.compile(r"error: ([^:]+): already exists in working directory")


class ApplyError(Exception):
    """A git operation on a patch or the sandbox history failed."""


@dataclass(frozen=True)
class CommitInfo:
    """A commit SHA and its subject line."""

    sha: str
    subject: str


def _git(
    directory: str, *args: str, stdin: bytes | None = None, combined: bool = False
) -> subprocess.CompletedProcess[bytes]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=directory,
            input=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if combined else subprocess.PIPE,
            check=False,
        )
    except OSError as exc:
        raise ApplyError(f"git {args[0] if args else ''}: {exc}") from exc


def _git_output(directory: str, what: str, *args: str) -> bytes:
    """Run git and return its stdout, raising ApplyError on failure."""
    proc = _git(directory, *args)
    if proc.returncode != 0:
        stderr = (proc.stderr or b"").decode(errors="replace").strip()
        raise ApplyError(f"{what}: exit status {proc.returncode}: {stderr}")
    return proc.stdout


def _run_git_apply(directory: str, patch: bytes, *args: str) -> str | None:
    """Run ``git apply`` with the patch on stdin; return an error message or None."""
    proc = _git(directory, "apply", *args, stdin=patch, combined=True)
    if proc.returncode == 0:
        return None
    output = proc.stdout.decode(errors="replace").strip()
    return f"{output}: exit status {proc.returncode}"


def _with_temp_git_dir(fn: Callable[[str], _T]) -> _T:
    """Call ``fn`` with a freshly initialised temporary git directory."""
    tmp_dir = tempfile.mkdtemp(prefix="yoloai-apply-")
    try:
        proc = _git(tmp_dir, "init", combined=True)
        if proc.returncode != 0:
            output = proc.stdout.decode(errors="replace").strip()
            raise ApplyError(
                f"git init temp dir: {output}: exit status {proc.returncode}"
            )
        return fn(tmp_dir)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


def format_apply_error(message: str, target_dir: str) -> ApplyError:
    """Turn ``git apply`` output into an error explaining what conflicted."""
    match = _RE_PATCH_FAILED.search(message)
    if match:
        return ApplyError(
            f"changes to {match.group(1)} conflict with your working directory — "
            f"the patch expected different content at line {match.group(2)}. "
            "This typically means the original file was edited after the "
            "sandbox was created"
        )
    match = _RE_DOES_NOT_EXIST.search(message)
    if match:
        return ApplyError(
            f"cannot apply deletion to {match.group(1)} — the file no longer "
            f"exists in {target_dir}"
        )
    match = _RE_ALREADY_EXISTS.search(message)
    if match:
        return ApplyError(
            f"cannot create {match.group(1)} — it already exists in "
            f"{target_dir} with different content"
        )
    return ApplyError(f"git apply failed in {target_dir}: {message}")


def check_patch(patch: bytes, target_dir: str, is_git: bool) -> None:
    """Raise ApplyError unless the patch applies cleanly to ``target_dir``."""
    if is_git:
        message = _run_git_apply(target_dir, patch, "--check")
    else:
        message = _with_temp_git_dir(
            lambda tmp: _run_git_apply(
                tmp, patch, "--check", "--unsafe-paths", f"--directory={target_dir}"
            )
        )
    if message is not None:
        raise format_apply_error(message, target_dir)


def apply_patch(patch: bytes, target_dir: str, is_git: bool) -> None:
    """Apply the patch to ``target_dir``.

    Git repositories are patched in place; other directories are patched
    from a temporary git directory with ``--unsafe-paths --directory``.
    """
    if is_git:
        message = _run_git_apply(target_dir, patch)
    else:
        try:
            real_target = os.path.realpath(target_dir, strict=True)
        except OSError as exc:
            raise ApplyError(f"resolve target dir: {exc}") from exc
        message = _with_temp_git_dir(
            lambda tmp: _run_git_apply(
                tmp, patch, "--unsafe-paths", f"--directory={real_target}"
            )
        )
    if message is not None:
        raise format_apply_error(message, target_dir)


def is_git_repo(directory: str) -> bool:
    """Return True if ``directory`` has a ``.git`` entry."""
    return os.path.exists(os.path.join(directory, ".git"))


def list_commits_beyond_baseline(work_dir: str, baseline_sha: str) -> list[CommitInfo]:
    """Commits made after the baseline, oldest first."""
    output = _git_output(
        work_dir,
        "git log",
        "log",
        "--reverse",
        "--format=%H %s",
        f"{baseline_sha}..HEAD",
    )
    lines = output.decode(errors="replace").strip()
    if not lines:
        return []
    commits = []
    for line in lines.split("\n"):
        sha, sep, subject = line.partition(" ")
        if sep:
            commits.append(CommitInfo(sha=sha, subject=subject))
    return commits


def resolve_ref(commits: Iterable[CommitInfo], ref: str) -> CommitInfo:
    """Find the single commit whose SHA starts with ``ref`` (case-insensitive)."""
    ref = ref.lower()
    matches = [c for c in commits if c.sha.lower().startswith(ref)]
    if not matches:
        raise ApplyError(f"ref {ref!r} not found among sandbox commits")
    if len(matches) > 1:
        raise ApplyError(f"ref {ref!r} is ambiguous — matches {len(matches)} commits")
    return matches[0]


def resolve_refs(commits: Sequence[CommitInfo], refs: Iterable[str]) -> list[CommitInfo]:
    """Resolve short SHAs and ``start..end`` ranges to commits.

    A range excludes its start and includes its end. The result keeps the
    chronological order of ``commits``.
    """
    sha_index = {c.sha.lower(): i for i, c in enumerate(commits)}

    def resolve(ref: str) -> str:
        ref = ref.lower()
        found = ""
        for commit in commits:
            if commit.sha.lower().startswith(ref):
                if found:
                    raise ApplyError(
                        f"ref {ref!r} is ambiguous — matches multiple commits"
                    )
                found = commit.sha.lower()
        if not found:
            raise ApplyError(f"ref {ref!r} not found among sandbox commits")
        return found

    selected: set[str] = set()
    for ref in refs:
        before, sep, after = ref.partition("..")
        if sep:
            start_idx = sha_index[resolve(before)]
            end_idx = sha_index[resolve(after)]
            if start_idx > end_idx:
                raise ApplyError(f"invalid range: {before} is after {after}")
            selected.update(c.sha.lower() for c in commits[start_idx + 1 : end_idx + 1])
        else:
            selected.add(resolve(ref))

    return [c for c in commits if c.sha.lower() in selected]


def contiguous_prefix_end(
    all_commits: Sequence[CommitInfo], applied_shas: Collection[str] | Mapping[str, bool]
) -> int:
    """Index of the last commit in the applied prefix of ``all_commits``, or -1."""
    if isinstance(applied_shas, Mapping):
        applied = {sha for sha, flag in applied_shas.items() if flag}
    else:
        applied = set(applied_shas)
    end = -1
    for i, commit in enumerate(all_commits):
        if commit.sha not in applied:
            break
        end = i
    return end


def _format_patch_one(work_dir: str, patch_dir: str, sha: str) -> None:
    proc = _git(
        work_dir,
        "format-patch",
        "-1",
        f"--output-directory={patch_dir}",
        sha,
        combined=True,
    )
    if proc.returncode != 0:
        output = proc.stdout.decode(errors="replace").strip()
        raise ApplyError(
            f"git format-patch -1 {sha}: {output}: exit status {proc.returncode}"
        )


def _collect_patches(patch_dir: str) -> list[str]:
    try:
        names = os.listdir(patch_dir)
    except OSError as exc:
        raise ApplyError(f"read patch dir: {exc}") from exc
    return sorted(name for name in names if name.endswith(".patch"))


def generate_format_patch_for_refs(
    work_dir: str, shas: Iterable[str]
) -> tuple[str, list[str]]:
    """Write one ``.patch`` file per given commit into a new temporary directory.

    Returns the directory and the sorted patch file names; the caller removes
    the directory.
    """
    patch_dir = tempfile.mkdtemp(prefix="yoloai-format-patch-")
    try:
        for sha in shas:
            _format_patch_one(work_dir, patch_dir, sha)
        return patch_dir, _collect_patches(patch_dir)
    except ApplyError:
        shutil.rmtree(patch_dir, ignore_errors=True)
        raise


def generate_format_patch(
    work_dir: str, baseline_sha: str, paths: Sequence[str] | None = None
) -> tuple[str, list[str]]:
    """Write ``.patch`` files for the commits after the baseline.

    With ``paths``, only commits touching those paths are included. Returns
    the temporary directory and the sorted patch file names; the caller
    removes the directory.
    """
    patch_dir = tempfile.mkdtemp(prefix="yoloai-format-patch-")
    try:
        if not paths:
            proc = _git(
                work_dir,
                "format-patch",
                f"--output-directory={patch_dir}",
                f"{baseline_sha}..HEAD",
                combined=True,
            )
            if proc.returncode != 0:
                output = proc.stdout.decode(errors="replace").strip()
                raise ApplyError(
                    f"git format-patch: {output}: exit status {proc.returncode}"
                )
        else:
            rev_out = _git_output(
                work_dir,
                "git rev-list",
                "rev-list",
                "--reverse",
                f"{baseline_sha}..HEAD",
                "--",
                *paths,
            )
            for sha in rev_out.decode(errors="replace").split():
                _format_patch_one(work_dir, patch_dir, sha)
        return patch_dir, _collect_patches(patch_dir)
    except ApplyError:
        shutil.rmtree(patch_dir, ignore_errors=True)
        raise


def format_am_error(output: bytes | str, target_dir: str) -> ApplyError:
    """An error for a failed ``git am`` with guidance on how to resolve it."""
    if isinstance(output, bytes):
        output = output.decode(errors="replace")
    message = output.strip()
    return ApplyError(
        f"git am failed in {target_dir}:\n{message}\n\nTo resolve:\n"
        f"  cd {target_dir}\n"
        "  # fix conflicts, then: git am --continue\n"
        "  # or skip this commit: git am --skip\n"
        "  # or abort:            git am --abort"
    )


def apply_format_patch(patch_dir: str, files: Sequence[str], target_dir: str) -> None:
    """Apply the patch files to the git repository ``target_dir`` with ``git am --3way``."""
    if not files:
        return
    full_paths = [os.path.join(patch_dir, name) for name in files]
    proc = _git(target_dir, "am", "--3way", *full_paths, combined=True)
    if proc.returncode != 0:
        raise format_am_error(proc.stdout, target_dir)