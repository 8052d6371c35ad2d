"""Seeding and building of Docker image resources, with change detection."""

from __future__ import annotations

import codecs
import hashlib
import io
import json
import os
import tarfile
import time
from dataclasses import dataclass, field
from typing import IO, Mapping

CHECKSUM_FILE = ".resource-checksums"
LAST_BUILD_FILE = ".last-build-checksum"

BUILD_INPUTS = ("Dockerfile", "entrypoint.sh", "tmux.conf")

_PROFILE_SKIPPED = frozenset({CHECKSUM_FILE, LAST_BUILD_FILE, "profile.yaml"})


class BuildError(Exception):
    """Resource seeding, build context creation or an image build failed."""


@dataclass
class SeedResult:
    """What happened while seeding resource files."""

    changed: bool = False
    conflicts: list[str] = field(default_factory=list)
    manifest_missing: bool = False


def _write_file(path: str, data: bytes, mode: int = 0o600) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _load_checksums(directory: str) -> tuple[dict[str, str], bool]:
    """Return the checksum manifest and whether it loaded cleanly."""
    try:
        with open(os.path.join(directory, CHECKSUM_FILE), "rb") as fh:
            data = json.loads(fh.read())
    except (OSError, ValueError):
        return {}, False
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        return {}, False
    return data, True


def _save_checksums(directory: str, checksums: Mapping[str, str]) -> None:
    text = json.dumps(dict(checksums), indent=2, sort_keys=True)
    _write_file(os.path.join(directory, CHECKSUM_FILE), text.encode())


def seed_resources(target_dir: str, resources: Mapping[str, bytes]) -> SeedResult:
    """Write the given resource files into ``target_dir``, keeping user edits.

    A missing file is written. A file still matching its last-seeded checksum
    is overwritten when the shipped version changes. A file the user changed
    (or one with no recorded checksum that differs) is left alone and the new
    version is written next to it as ``<name>.new``, reported as a conflict.
    """
    result = SeedResult()
    try:
        os.makedirs(target_dir, mode=0o750, exist_ok=True)
    except OSError as exc:
        raise BuildError(f"create directory {target_dir}: {exc}") from exc

    checksums, manifest_ok = _load_checksums(target_dir)
    result.manifest_missing = not manifest_ok

    for name, content in resources.items():
        path = os.path.join(target_dir, name)
        embedded_sum = _sha256_hex(content)

        try:
            with open(path, "rb") as fh:
                existing = fh.read()
        except OSError:
            try:
                _write_file(path, content)
            except OSError as exc:
                raise BuildError(f"write {name}: {exc}") from exc
            checksums[name] = embedded_sum
            result.changed = True
            continue

        existing_sum = _sha256_hex(existing)
        if existing_sum == embedded_sum:
            checksums[name] = embedded_sum
            continue

        last_seeded = checksums.get(name)
        user_modified = last_seeded is None or existing_sum != last_seeded

        if user_modified:
            try:
                _write_file(path + ".new", content)
            except OSError as exc:
                raise BuildError(f"write {name}.new: {exc}") from exc
            result.conflicts.append(name)
        else:
            try:
                _write_file(path, content)
            except OSError as exc:
                raise BuildError(f"write {name}: {exc}") from exc
            checksums[name] = embedded_sum
            result.changed = True

    try:
        _save_checksums(target_dir, checksums)
    except OSError as exc:
        raise BuildError(f"save resource checksums: {exc}") from exc

    return result


def build_inputs_checksum(source_dir: str) -> str:
    """Combined SHA-256 of the build input files, or "" if one is unreadable."""
    digest = hashlib.sha256()
    for name in BUILD_INPUTS:
        try:
            with open(os.path.join(source_dir, name), "rb") as fh:
                data = fh.read()
        except OSError:
            return ""
        digest.update(name.encode())
        digest.update(data)
    return digest.hexdigest()


def _read_text(path: str) -> str | None:
    try:
        with open(path, "rb") as fh:
            return fh.read().decode(errors="replace")
    except OSError:
        return None


def needs_build(source_dir: str) -> bool:
    """Return True if the build inputs changed since the last recorded build."""
    current = build_inputs_checksum(source_dir)
    if not current:
        return True
    last = _read_text(os.path.join(source_dir, LAST_BUILD_FILE))
    if last is None:
        return True
    return last != current


def record_build_checksum(source_dir: str) -> None:
    """Record the current build inputs checksum; silently skips on failure."""
    checksum = build_inputs_checksum(source_dir)
    if checksum:
        try:
            _write_file(os.path.join(source_dir, LAST_BUILD_FILE), checksum.encode())
        except OSError:
            pass


def _add_tar_member(tar: tarfile.TarFile, name: str, content: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(content)
    info.mode = 0o644
    info.mtime = int(time.time())
    tar.addfile(info, io.BytesIO(content))


def create_build_context(source_dir: str) -> bytes:
    """Return a tar archive of the base image build inputs in ``source_dir``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in BUILD_INPUTS:
            try:
                with open(os.path.join(source_dir, name), "rb") as fh:
                    content = fh.read()
            except OSError as exc:
                raise BuildError(f"read {name}: {exc}") from exc
            _add_tar_member(tar, name, content)
    return buf.getvalue()


def create_profile_build_context(source_dir: str) -> bytes:
    """Return a tar archive of the regular files in a profile directory.

    Subdirectories and internal bookkeeping files are left out.
    """
    try:
        entries = sorted(os.scandir(source_dir), key=lambda e: e.name)
    except OSError as exc:
        raise BuildError(f"read profile dir: {exc}") from exc

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False) or entry.name in _PROFILE_SKIPPED:
                continue
            try:
                with open(entry.path, "rb") as fh:
                    content = fh.read()
            except OSError as exc:
                raise BuildError(f"read {entry.name}: {exc}") from exc
            _add_tar_member(tar, entry.name, content)
    return buf.getvalue()


def stream_build_output(response: IO, output: IO[str]) -> None:
    """Copy the ``stream`` fields of Docker build JSON messages to ``output``.

    ``response`` may yield text or bytes. Raises BuildError on an ``error``
    message or on malformed output.
    """
    decoder = json.JSONDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    eof = False

    while True:
        buffer = buffer.lstrip()
        if not buffer:
            if eof:
                return
        else:
            try:
                msg, end = decoder.raw_decode(buffer)
            except json.JSONDecodeError as exc:
                if eof:
                    raise BuildError(f"decode build output: {exc}") from exc
                msg = None
            if msg is not None or buffer.startswith("null"):
                buffer = buffer[end:]
                if msg is None:
                    continue
                if not isinstance(msg, dict):
                    raise BuildError(
                        f"decode build output: unexpected value {msg!r}"
                    )
                error = msg.get("error")
                if error:
                    raise BuildError(f"docker build: {error}")
                stream = msg.get("stream")
                if stream:
                    output.write(stream)
                continue

        chunk = response.read(65536)
        if not chunk:
            eof = True
            if isinstance(chunk, bytes):
                buffer += utf8.decode(b"", final=True)
            continue
        buffer += utf8.decode(chunk) if isinstance(chunk, bytes) else chunk


def profile_build_checksum(profile_dir: str) -> str:
    """SHA-256 of the profile's Dockerfile, or "" if it cannot be read."""
    try:
        with open(os.path.join(profile_dir, "Dockerfile"), "rb") as fh:
            data = fh.read()
    except OSError:
        return ""
    digest = hashlib.sha256()
    digest.update(b"Dockerfile")
    digest.update(data)
    return digest.hexdigest()


def profile_image_needs_build(profile_dir: str, parent_dir: str) -> bool:
    """Return True if the profile image is stale.

    Stale means no recorded checksum, a changed Dockerfile, or a parent
    profile whose last build is newer than this profile's.
    """
    current = profile_build_checksum(profile_dir)
    if not current:
        return True

    last_path = os.path.join(profile_dir, LAST_BUILD_FILE)
    last = _read_text(last_path)
    if last is None or last != current:
        return True

    try:
        parent_mtime = os.stat(os.path.join(parent_dir, LAST_BUILD_FILE)).st_mtime_ns
    except OSError:
        return False
    try:
        my_mtime = os.stat(last_path).st_mtime_ns
    except OSError:
        return True
    return parent_mtime > my_mtime


def record_profile_build_checksum(profile_dir: str) -> None:
    """Record the profile Dockerfile checksum; silently skips on failure."""
    checksum = profile_build_checksum(profile_dir)
    if checksum:
        try:
            _write_file(os.path.join(profile_dir, LAST_BUILD_FILE), checksum.encode())
        except OSError:
            pass