import os
import shutil
import subprocess

import pytest

from yoloai.apply import (
    ApplyError,
    CommitInfo,
    apply_format_patch,
    apply_patch,
    check_patch,
    contiguous_prefix_end,
    format_am_error,
    format_apply_error,
    generate_format_patch,
    generate_format_patch_for_refs,
    is_git_repo,
    list_commits_beyond_baseline,
    resolve_ref,
    resolve_refs,
)


@pytest.fixture(autouse=True)
def git_env(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "user@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "user@example.com")


def git(directory, *args):
    proc = subprocess.run(
        ["git", *args], cwd=directory, capture_output=True, check=True
    )
    return proc.stdout.decode().strip()


def write(directory, name, content):
    with open(os.path.join(directory, name), "w", encoding="utf-8") as fh:
        fh.write(content)


def read(directory, name):
    with open(os.path.join(directory, name), encoding="utf-8") as fh:
        return fh.read()


def make_repo(path, files, message):
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    for name, content in files.items():
        write(path, name, content)
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", message)
    return str(path)


def make_work(tmp_path, commits=(), files=None):
    """A work copy with a baseline commit and optional agent commits."""
    work = make_repo(
        tmp_path / "work",
        files or {"file.txt": "original content\n"},
        "yoloai baseline",
    )
    baseline = git(work, "rev-parse", "HEAD")
    for subject, name, content in commits:
        write(work, name, content)
        git(work, "add", "-A")
        git(work, "commit", "-q", "-m", subject)
    return work, baseline


def make_target(tmp_path, name, files=None):
    return make_repo(
        tmp_path / name, files or {"file.txt": "original content\n"}, "initial"
    )


def diff_against(work, rev):
    git(work, "add", "-A")
    return subprocess.run(
        ["git", "diff", "--binary", rev], cwd=work, capture_output=True, check=True
    ).stdout


# apply_patch / check_patch


def test_apply_patch_git_target(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "file.txt", "modified by agent\n")
    patch = diff_against(work, baseline)
    target = make_target(tmp_path, "target-git")
    apply_patch(patch, target, True)
    assert read(target, "file.txt") == "modified by agent\n"


def test_apply_patch_non_git_target(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "file.txt", "modified by agent\n")
    patch = diff_against(work, baseline)
    target = tmp_path / "target-plain"
    target.mkdir()
    write(target, "file.txt", "original content\n")
    apply_patch(patch, str(target), False)
    assert read(target, "file.txt") == "modified by agent\n"


def test_apply_patch_new_file(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "created.txt", "brand new file\n")
    patch = diff_against(work, baseline)
    target = make_target(tmp_path, "target-new")
    apply_patch(patch, target, True)
    assert read(target, "created.txt") == "brand new file\n"


def test_apply_patch_delete_file(tmp_path):
    files = {"keep.txt": "keep this\n", "remove.txt": "delete me\n"}
    work, baseline = make_work(tmp_path, files=files)
    os.remove(os.path.join(work, "remove.txt"))
    patch = diff_against(work, baseline)
    target = make_target(tmp_path, "target-del", files)
    assert apply_patch(patch, target, True) is None
    remaining = sorted(name for name in os.listdir(target) if name != ".git")
    assert remaining == ["keep.txt"]
    assert read(target, "keep.txt") == "keep this\n"


def test_apply_patch_non_git_missing_target(tmp_path):
    with pytest.raises(ApplyError, match="resolve target dir"):
        apply_patch(b"", str(tmp_path / "missing"), False)


def test_check_patch_conflict(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "file.txt", "agent version\n")
    patch = diff_against(work, baseline)
    target = make_target(
        tmp_path, "target-conflict", {"file.txt": "completely different content\n"}
    )
    with pytest.raises(ApplyError, match="conflict") as info:
        check_patch(patch, target, True)
    assert "file.txt" in str(info.value)


def test_check_patch_clean_leaves_files_untouched(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "file.txt", "modified\n")
    patch = diff_against(work, baseline)
    target = make_target(tmp_path, "target-clean")
    assert check_patch(patch, target, True) is None
    assert read(target, "file.txt") == "original content\n"


def test_check_patch_non_git_clean(tmp_path):
    work, baseline = make_work(tmp_path)
    write(work, "file.txt", "modified\n")
    patch = diff_against(work, baseline)
    target = tmp_path / "plain"
    target.mkdir()
    write(target, "file.txt", "original content\n")
    assert check_patch(patch, os.path.realpath(target), False) is None
    assert read(target, "file.txt") == "original content\n"


# is_git_repo


def test_is_git_repo_true(tmp_path):
    git(tmp_path, "init", "-q")
    assert is_git_repo(str(tmp_path)) is True


def test_is_git_repo_false(tmp_path):
    assert is_git_repo(str(tmp_path)) is False


# format_apply_error / format_am_error


def test_format_apply_error_patch_failed():
    err = format_apply_error(
        "error: patch failed: handler.go:42\n"
        "error: handler.go: patch does not apply: exit status 1",
        "/tmp/project",
    )
    message = str(err)
    assert "handler.go" in message
    assert "42" in message
    assert "conflict" in message


def test_format_apply_error_unknown():
    err = format_apply_error("some unusual error: exit status 1", "/tmp/project")
    assert "git apply failed" in str(err)
    assert "/tmp/project" in str(err)


def test_format_apply_error_does_not_exist():
    err = format_apply_error(
        "error: gone.txt: does not exist in working directory", "/tmp/project"
    )
    assert str(err) == (
        "cannot apply deletion to gone.txt — the file no longer exists in /tmp/project"
    )


def test_format_apply_error_already_exists():
    err = format_apply_error(
        "error: new.txt: already exists in working directory", "/tmp/project"
    )
    assert str(err) == (
        "cannot create new.txt — it already exists in /tmp/project "
        "with different content"
    )


def test_format_am_error_guidance():
    err = format_am_error(b"  Patch failed at 0001\n", "/tmp/project")
    message = str(err)
    assert message.startswith("git am failed in /tmp/project:\nPatch failed at 0001")
    assert "cd /tmp/project" in message
    assert "git am --abort" in message


# list_commits_beyond_baseline


def test_list_commits_none(tmp_path):
    work, baseline = make_work(tmp_path)
    assert list_commits_beyond_baseline(work, baseline) == []


def test_list_commits_single(tmp_path):
    work, baseline = make_work(
        tmp_path, [("add feature X", "feature.txt", "feature X\n")]
    )
    commits = list_commits_beyond_baseline(work, baseline)
    assert len(commits) == 1
    assert commits[0].subject == "add feature X"
    assert len(commits[0].sha) == 40


def test_list_commits_multiple(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [
            ("first commit", "a.txt", "a\n"),
            ("second commit", "b.txt", "b\n"),
            ("third commit", "c.txt", "c\n"),
        ],
    )
    subjects = [c.subject for c in list_commits_beyond_baseline(work, baseline)]
    assert subjects == ["first commit", "second commit", "third commit"]


def test_list_commits_bad_baseline(tmp_path):
    work, _ = make_work(tmp_path)
    with pytest.raises(ApplyError, match="git log"):
        list_commits_beyond_baseline(work, "0" * 40)


def test_new_baseline_hides_earlier_commits(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n"), ("third", "c.txt", "c\n")],
    )
    commits = list_commits_beyond_baseline(work, baseline)
    remaining = list_commits_beyond_baseline(work, commits[1].sha)
    assert [c.subject for c in remaining] == ["third"]


# resolve_ref / resolve_refs


def test_resolve_ref_full_and_short(tmp_path):
    work, baseline = make_work(tmp_path, [("add feature", "feature.txt", "feature\n")])
    commits = list_commits_beyond_baseline(work, baseline)
    full = resolve_ref(commits, commits[0].sha)
    assert full == commits[0]
    assert full.subject == "add feature"
    assert resolve_ref(commits, commits[0].sha[:7].upper()).sha == commits[0].sha


def test_resolve_ref_not_found():
    commits = [CommitInfo("aaa111", "A")]
    with pytest.raises(ApplyError, match="not found"):
        resolve_ref(commits, "deadbeef")


def test_resolve_ref_ambiguous():
    commits = [CommitInfo("abc111", "A"), CommitInfo("abc222", "B")]
    with pytest.raises(ApplyError, match="ambiguous — matches 2 commits"):
        resolve_ref(commits, "abc")


def test_resolve_refs_single(tmp_path):
    work, baseline = make_work(
        tmp_path, [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n")]
    )
    commits = list_commits_beyond_baseline(work, baseline)
    resolved = resolve_refs(commits, [commits[1].sha[:7]])
    assert [c.sha for c in resolved] == [commits[1].sha]


def test_resolve_refs_range(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n"), ("third", "c.txt", "c\n")],
    )
    commits = list_commits_beyond_baseline(work, baseline)
    range_ref = commits[0].sha[:7] + ".." + commits[2].sha[:7]
    resolved = resolve_refs(commits, [range_ref])
    assert [c.subject for c in resolved] == ["second", "third"]


def test_resolve_refs_not_found():
    with pytest.raises(ApplyError, match="not found"):
        resolve_refs([CommitInfo("aaa111", "A")], ["deadbeef"])


def test_resolve_refs_invalid_range():
    commits = [CommitInfo("aaa111", "A"), CommitInfo("bbb222", "B")]
    with pytest.raises(ApplyError, match="invalid range: bbb is after aaa"):
        resolve_refs(commits, ["bbb..aaa"])


def test_resolve_refs_keeps_chronological_order():
    commits = [CommitInfo("aaa111", "A"), CommitInfo("bbb222", "B"), CommitInfo("ccc333", "C")]
    resolved = resolve_refs(commits, ["ccc", "aaa"])
    assert [c.subject for c in resolved] == ["A", "C"]


# contiguous_prefix_end

COMMITS = [CommitInfo("aaa", "A"), CommitInfo("bbb", "B"), CommitInfo("ccc", "C")]


@pytest.mark.parametrize(
    "applied, expected",
    [
        ({"aaa": True, "bbb": True, "ccc": True}, 2),
        ({"aaa": True, "bbb": True}, 1),
        ({"aaa": True, "ccc": True}, 0),
        ({"ccc": True}, -1),
        ({"aaa", "bbb"}, 1),
    ],
)
def test_contiguous_prefix_end(applied, expected):
    assert contiguous_prefix_end(COMMITS, applied) == expected


def test_contiguous_prefix_end_empty():
    assert contiguous_prefix_end([CommitInfo("aaa", "A")], {}) == -1


# generate_format_patch / generate_format_patch_for_refs


def test_generate_format_patch_single(tmp_path):
    work, baseline = make_work(tmp_path, [("add feature", "feature.txt", "feature\n")])
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        assert len(files) == 1
        assert files[0].endswith(".patch")
        assert "add feature" in read(patch_dir, files[0])
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_multiple(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n"), ("third", "c.txt", "c\n")],
    )
    patch_dir, files = generate_format_patch(work, baseline, [])
    try:
        assert len(files) == 3
        assert "first" in read(patch_dir, files[0])
        assert "third" in read(patch_dir, files[2])
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_no_commits(tmp_path):
    work, baseline = make_work(tmp_path)
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        assert files == []
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_path_filter(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [("change a", "a.txt", "a content\n"), ("change b", "b.txt", "b content\n")],
    )
    patch_dir, files = generate_format_patch(work, baseline, ["a.txt"])
    try:
        assert len(files) == 1
        assert "change a" in read(patch_dir, files[0])
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_for_refs_single(tmp_path):
    work, baseline = make_work(
        tmp_path, [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n")]
    )
    commits = list_commits_beyond_baseline(work, baseline)
    patch_dir, files = generate_format_patch_for_refs(work, [commits[1].sha])
    try:
        assert len(files) == 1
        assert "second" in read(patch_dir, files[0])
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_for_refs_multiple(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [("first", "a.txt", "a\n"), ("second", "b.txt", "b\n"), ("third", "c.txt", "c\n")],
    )
    commits = list_commits_beyond_baseline(work, baseline)
    patch_dir, files = generate_format_patch_for_refs(
        work, [commits[0].sha, commits[2].sha]
    )
    try:
        assert len(files) == 2
    finally:
        shutil.rmtree(patch_dir)


def test_generate_format_patch_for_refs_bad_sha(tmp_path):
    work, _ = make_work(tmp_path)
    with pytest.raises(ApplyError, match="git format-patch -1"):
        generate_format_patch_for_refs(work, ["f" * 40])


# apply_format_patch


def test_apply_format_patch_single(tmp_path):
    work, baseline = make_work(
        tmp_path, [("add feature", "feature.txt", "feature content\n")]
    )
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        target = make_target(tmp_path, "target-am-one")
        apply_format_patch(patch_dir, files, target)
        assert read(target, "feature.txt") == "feature content\n"
    finally:
        shutil.rmtree(patch_dir)


def test_apply_format_patch_multiple(tmp_path):
    work, baseline = make_work(
        tmp_path, [("first commit", "a.txt", "a\n"), ("second commit", "b.txt", "b\n")]
    )
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        target = make_target(tmp_path, "target-am-multi")
        apply_format_patch(patch_dir, files, target)
        assert os.path.exists(os.path.join(target, "a.txt"))
        assert os.path.exists(os.path.join(target, "b.txt"))
        assert git(target, "rev-list", "--count", "HEAD") == "3"
    finally:
        shutil.rmtree(patch_dir)


def test_apply_format_patch_conflict(tmp_path):
    work, baseline = make_work(
        tmp_path, [("modify file", "file.txt", "agent version of file\n")]
    )
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        target = make_target(
            tmp_path, "target-am-conflict", {"file.txt": "completely different content\n"}
        )
        with pytest.raises(ApplyError) as info:
            apply_format_patch(patch_dir, files, target)
        assert "git am failed" in str(info.value)
        assert "--abort" in str(info.value)
    finally:
        shutil.rmtree(patch_dir)


def test_apply_format_patch_preserves_subject(tmp_path):
    work, baseline = make_work(
        tmp_path, [("my commit message", "new.txt", "new content\n")]
    )
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        target = make_target(tmp_path, "target-am-author")
        apply_format_patch(patch_dir, files, target)
        assert git(target, "log", "-1", "--format=%s") == "my commit message"
    finally:
        shutil.rmtree(patch_dir)


def test_apply_format_patch_no_files_keeps_history(tmp_path):
    target = make_target(tmp_path, "target-empty")
    apply_format_patch(str(tmp_path), [], target)
    assert git(target, "rev-list", "--count", "HEAD") == "1"


# end-to-end


def test_selective_apply_flow(tmp_path):
    work, baseline = make_work(
        tmp_path,
        [
            ("add A", "a.txt", "a content\n"),
            ("add B", "b.txt", "b content\n"),
            ("add C", "c.txt", "c content\n"),
        ],
    )
    commits = list_commits_beyond_baseline(work, baseline)
    resolved = resolve_refs(commits, [commits[0].sha[:7], commits[1].sha[:7]])
    assert len(resolved) == 2

    patch_dir, files = generate_format_patch_for_refs(work, [c.sha for c in resolved])
    try:
        target = make_target(tmp_path, "target-selective")
        apply_format_patch(patch_dir, files, target)
    finally:
        shutil.rmtree(patch_dir)

    assert os.path.exists(os.path.join(target, "a.txt"))
    assert os.path.exists(os.path.join(target, "b.txt"))
    assert not os.path.exists(os.path.join(target, "c.txt"))

    prefix_end = contiguous_prefix_end(commits, {commits[0].sha, commits[1].sha})
    assert prefix_end == 1
    remaining = list_commits_beyond_baseline(work, commits[prefix_end].sha)
    assert [c.subject for c in remaining] == ["add C"]


def test_apply_flow_commits_and_wip(tmp_path):
    work, baseline = make_work(
        tmp_path, [("committed feature", "committed.txt", "committed\n")]
    )
    write(work, "wip.txt", "wip content\n")
    patch_dir, files = generate_format_patch(work, baseline, None)
    try:
        target = make_target(tmp_path, "target-flow-both")
        apply_format_patch(patch_dir, files, target)
    finally:
        shutil.rmtree(patch_dir)

    wip_patch = diff_against(work, "HEAD")
    apply_patch(wip_patch, target, True)
    assert os.path.exists(os.path.join(target, "committed.txt"))
    assert read(target, "wip.txt") == "wip content\n"