import os

import pytest

from yoloai.runtime import (
    ExecError,
    InstanceConfig,
    MountSpec,
    NotFoundError,
    NotRunningError,
    PortMapping,
)
from yoloai.tart_args import (
    build_mount_symlink_cmds,
    build_network_args,
    build_run_args,
    exec_args,
    is_fatal_exec_error,
    map_tart_error,
    mount_dir_name,
    port_forward_args,
    remap_target_path,
    sandbox_name,
)


def test_sandbox_name():
    assert sandbox_name("yoloai-mysandbox") == "mysandbox"
    assert sandbox_name("yoloai-test-box") == "test-box"
    assert sandbox_name("plain") == "plain"


def test_exec_args():
    assert exec_args("yoloai-test", "bash", "-c", "echo hello") == [
        "exec",
        "yoloai-test",
        "bash",
        "-c",
        "echo hello",
    ]


def test_build_run_args(tmp_path):
    sandbox_path = str(tmp_path / "sandbox")
    os.makedirs(sandbox_path)
    ext_dir = str(tmp_path / "external")
    os.makedirs(ext_dir)

    mounts = [
        MountSpec(source=ext_dir, target="/Users/karl/project"),
        MountSpec(source=sandbox_path + "/agent-state", target="/home/yoloai/.claude/"),
        MountSpec(source=sandbox_path + "/config.json", target="/yoloai/config.json"),
    ]
    args = build_run_args("yoloai-test", sandbox_path, mounts)

    assert "run" in args
    assert "--no-graphics" in args
    assert "--dir" in args
    assert "yoloai:" + sandbox_path in args
    assert "m-" + os.path.basename(ext_dir) + ":" + ext_dir in args
    for arg in args:
        assert "agent-state" not in arg
        assert "config.json" not in arg
    assert args[-1] == "yoloai-test"


def test_build_run_args_skips_external_file(tmp_path):
    sandbox_path = str(tmp_path / "sandbox")
    os.makedirs(sandbox_path)
    ext_file = tmp_path / "notes.txt"
    ext_file.write_text("x")
    args = build_run_args(
        "vm", sandbox_path, [MountSpec(source=str(ext_file), target="/x")]
    )
    assert args == ["run", "--no-graphics", "--dir", "yoloai:" + sandbox_path, "vm"]


def test_mount_dir_name():
    assert mount_dir_name("/Users/karl/project") == "m-project"
    assert mount_dir_name("/Users/karl/project/") == "m-project"


def test_build_network_args_none():
    args = build_network_args(InstanceConfig(network_mode="none"))
    assert "--net-softnet" in args
    assert "--net-softnet-block=0.0.0.0/0" in args
    assert "--net-softnet-block=::/0" in args


def test_build_network_args_default():
    assert build_network_args(InstanceConfig()) == []


def test_build_network_args_port_forwarding():
    cfg = InstanceConfig(
        ports=[
            PortMapping(host_port="8080", instance_port="80"),
            PortMapping(host_port="8443", instance_port="443", protocol="tcp"),
        ]
    )
    args = build_network_args(cfg)
    assert "--net-softnet" in args
    assert "--net-softnet-expose=8080:80,8443:443" in args
    assert "--net-softnet-block=0.0.0.0/0" not in args


def test_build_network_args_isolated_with_ports():
    cfg = InstanceConfig(
        network_mode="none",
        ports=[PortMapping(host_port="3000", instance_port="3000")],
    )
    args = build_network_args(cfg)
    assert "--net-softnet" in args
    assert "--net-softnet-block=0.0.0.0/0" in args
    assert "--net-softnet-block=::/0" in args
    assert "--net-softnet-allow=3000/tcp" in args
    assert "--net-softnet-expose=3000:3000" in args


def test_build_mount_symlink_cmds():
    mounts = [
        MountSpec(source="/Users/karl/project", target="/Users/karl/project"),
        MountSpec(
            source="/Users/karl/.yoloai/sandboxes/test/agent-state",
            target="/home/admin/.claude/",
        ),
    ]
    dir_names = {
        "/Users/karl/project": "workdir",
        "/Users/karl/.yoloai/sandboxes/test/agent-state": "agent-state",
    }
    cmds = build_mount_symlink_cmds(mounts, dir_names)
    assert len(cmds) == 4
    assert any("mkdir" in c for c in cmds)
    assert any("ln -sf" in c for c in cmds)
    assert 'sudo mkdir -p "/Users/karl"' in cmds
    assert (
        'sudo ln -sf "/Volumes/My Shared Files/workdir" "/Users/karl/project"' in cmds
    )


def test_build_mount_symlink_cmds_no_symlink_needed():
    mounts = [
        MountSpec(
            source="/Users/karl/project", target="/Volumes/My Shared Files/workdir"
        )
    ]
    assert build_mount_symlink_cmds(mounts, {"/Users/karl/project": "workdir"}) == []


def test_build_mount_symlink_cmds_unknown_source_skipped():
    mounts = [MountSpec(source="/a", target="/b")]
    assert build_mount_symlink_cmds(mounts, {}) == []


@pytest.mark.parametrize(
    "stderr",
    ["VM 'yoloai-test' does not exist", "error: not found", "no such VM"],
)
def test_map_tart_error_not_found(stderr):
    err = map_tart_error(RuntimeError("boom"), stderr)
    assert isinstance(err, NotFoundError)
    assert str(err) == "instance not found"


@pytest.mark.parametrize("stderr", ["VM is not running", "error: VM is stopped"])
def test_map_tart_error_not_running(stderr):
    err = map_tart_error(RuntimeError("boom"), stderr)
    assert isinstance(err, NotRunningError)
    assert str(err) == "instance not running"


def test_map_tart_error_unknown():
    err = map_tart_error(RuntimeError("boom"), "some other error")
    assert not isinstance(err, (NotFoundError, NotRunningError))
    assert isinstance(err, ExecError)
    assert "some other error" in str(err)


def test_map_tart_error_empty_stderr():
    original = RuntimeError("boom")
    assert map_tart_error(original, "") is original


def test_port_forward_args():
    ports = [PortMapping(host_port="8080", instance_port="80")]
    assert port_forward_args(ports) == ["--net-softnet-expose=8080:80"]


def test_port_forward_args_empty():
    assert port_forward_args([]) is None


def test_port_forward_args_multiple_with_protocol():
    ports = [
        PortMapping(host_port="8080", instance_port="80", protocol="tcp"),
        PortMapping(host_port="5353", instance_port="53", protocol="udp"),
    ]
    assert port_forward_args(ports) == ["--net-softnet-expose=8080:80,5353:53"]


@pytest.mark.parametrize(
    "stderr",
    [
        "Unknown option '--user'",
        "executable file not found in $PATH",
        "VM 'yoloai-test' does not exist",
        "no such file or directory",
        "Usage: tart exec <vm-name>",
    ],
)
def test_is_fatal_exec_error_fatal(stderr):
    assert is_fatal_exec_error(stderr) is True


@pytest.mark.parametrize(
    "stderr",
    [
        "connection refused",
        "VM agent is not running",
        "timeout waiting for response",
        "",
    ],
)
def test_is_fatal_exec_error_not_fatal(stderr):
    assert is_fatal_exec_error(stderr) is False


@pytest.mark.parametrize(
    "target, expected",
    [
        ("/home/yoloai/.claude", "/Users/admin/.claude"),
        ("/home/yoloai", "/Users/admin"),
        ("/yoloai/config.json", "/Users/admin/.yoloai/config.json"),
        ("/Users/someone/project", "/Users/admin/host/Users/someone/project"),
        ("/Users/admin/work", "/Users/admin/work"),
        ("/opt/tools", "/opt/tools"),
        ("/home/yoloaiX", "/home/yoloaiX"),
    ],
)
def test_remap_target_path(target, expected):
    assert remap_target_path(target) == expected