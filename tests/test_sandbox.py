import json
import os
import stat
import subprocess
from unittest import mock

import pytest

from kuasar.quark.sandbox import (
    SPEC_TYPE_URL,
    ContainerData,
    ContainerOption,
    NotFoundError,
    ProcessData,
    QuarkSandboxer,
    SandboxData,
    SandboxOption,
    SandboxState,
    to_any,
)

CONFIG = {
    "linux": {
        "resources": {
            "cpu_period": 100000,
            "cpu_quota": 200000,
            "cpu_shares": 1024,
            "memory_limit_in_bytes": 1024 * 1024 * 1024,
            "cpuset_cpus": "0-1",
            "cpuset_mems": "0",
            "hugepage_limits": [{"page_size": "2MB", "limit": 2 * 1024 * 1024 * 1024}],
        }
    }
}


def _ok(*args, **kwargs):
    return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def sandboxer(tmp_path):
    mounts = tmp_path / "mounts"
    mounts.write_text("", encoding="utf-8")
    return QuarkSandboxer(mounts_path=str(mounts))


async def _created(sandboxer, tmp_path, sid="sb1", **kwargs):
    base = str(tmp_path / sid)
    data = SandboxData(id=sid, config=CONFIG, **kwargs)
    await sandboxer.create(sid, SandboxOption(base_dir=base, sandbox=data))
    return await sandboxer.sandbox(sid)


def test_create_spec_from_config():
    spec = QuarkSandboxer().create_spec(SandboxData(config=CONFIG, netns="/var/run/netns/x"))
    res = spec["linux"]["resources"]
    assert res["cpu"] == {
        "cpus": "0-1", "mems": "0", "period": 100000, "quota": 200000, "shares": 1024,
    }
    assert res["hugepageLimits"] == [{"pageSize": "2MB", "limit": 2 * 1024 * 1024 * 1024}]
    assert "memory" not in res
    assert spec["linux"]["namespaces"] == [{"type": "network", "path": "/var/run/netns/x"}]
    assert spec["root"] == {"path": "rootfs", "readonly": False}


def test_create_spec_skips_zero_values():
    config = {"linux": {"resources": {"cpu_period": 0, "cpu_quota": -1, "cpu_shares": 0}}}
    spec = QuarkSandboxer().create_spec(SandboxData(config=config))
    assert spec["linux"]["resources"]["cpu"] == {"cpus": "", "mems": ""}
    assert "namespaces" not in spec["linux"]


def test_create_spec_requires_config():
    with pytest.raises(ValueError, match="PodSandboxConfig"):
        QuarkSandboxer().create_spec(SandboxData())


def test_to_any_round_trip():
    spec = {"root": {"path": "rootfs"}}
    wrapped = to_any(spec)
    assert wrapped["type_url"] == "types.containerd.io/opencontainers/runtime-spec/1/Spec"
    assert wrapped["type_url"] == SPEC_TYPE_URL
    assert json.loads(wrapped["value"]) == spec


@pytest.mark.asyncio
async def test_create_writes_spec_and_dirs(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    bundle = sandbox.sandbox_bundle()
    assert bundle == f"{tmp_path / 'sb1'}/sandbox"
    assert os.path.isdir(f"{bundle}/rootfs/dev")
    with open(f"{bundle}/config.json", encoding="utf-8") as f:
        assert json.load(f) == sandbox.get_data().spec
    assert sandbox.status().state is SandboxState.CREATED


@pytest.mark.asyncio
async def test_create_with_absolute_root(sandboxer, tmp_path):
    root = tmp_path / "abs-root"
    data = SandboxData(id="sb2", spec={"root": {"path": str(root)}})
    await sandboxer.create("sb2", SandboxOption(base_dir=str(tmp_path / "sb2"), sandbox=data))
    assert (root / "dev").is_dir()


@pytest.mark.asyncio
async def test_unknown_sandbox(sandboxer):
    with pytest.raises(NotFoundError):
        await sandboxer.sandbox("missing")


@pytest.mark.asyncio
async def test_get_data_is_a_copy(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    data = sandbox.get_data()
    data.spec["root"]["path"] = "changed"
    assert sandbox.get_data().spec["root"]["path"] == "rootfs"


@pytest.mark.asyncio
async def test_start_reads_pid(sandboxer, tmp_path):
    script = tmp_path / "fake-quark"
    script.write_text(
        "#!/bin/sh\n"
        "while [ $# -gt 0 ]; do\n"
        '  if [ "$1" = "--pid-file" ]; then printf 4242 > "$2"; fi\n'
        "  shift\n"
        "done\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    sandboxer.quark_binary = str(script)
    sandbox = await _created(sandboxer, tmp_path)
    await sandboxer.start("sb1")
    assert sandbox.status().state is SandboxState.RUNNING
    assert sandbox.status().pid == 4242
    assert sandbox.get_data().task_address == f"unix://{sandbox.base_dir}/quark-task.sock"


@pytest.mark.asyncio
async def test_start_missing_binary(sandboxer, tmp_path):
    sandboxer.quark_binary = str(tmp_path / "no-such-binary")
    await _created(sandboxer, tmp_path)
    with pytest.raises(OSError, match="failed to spawn"):
        await sandboxer.start("sb1")


@pytest.mark.asyncio
async def test_stop_marks_stopped(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    await sandboxer.stop("sb1", False)
    status = sandbox.status()
    assert status.state is SandboxState.STOPPED
    assert status.exit_code == 0
    assert status.exited_at > 0
    assert sandbox.exit_signal.is_set()


@pytest.mark.asyncio
async def test_delete_removes_base_dir(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    assert await sandboxer.delete("sb1") is None
    assert not os.path.exists(sandbox.base_dir)


@pytest.mark.asyncio
async def test_append_container_writes_spec(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    spec = {"mounts": [{"destination": "/proc", "type": "proc", "source": "proc", "options": []}]}
    await sandbox.append_container("c1", ContainerOption(ContainerData(id="c1", spec=spec)))
    bundle = sandbox.container_bundle("c1")
    assert os.path.isdir(f"{bundle}/rootfs")
    with open(f"{bundle}/config.json", encoding="utf-8") as f:
        assert json.load(f)["mounts"] == spec["mounts"]
    container = await sandbox.container("c1")
    assert container.data.rootfs == []


@pytest.mark.asyncio
async def test_append_container_bind_mounts_and_io(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    src = tmp_path / "vol"
    src.mkdir()
    fifo = tmp_path / "stdout-file"
    fifo.write_text("")
    spec = {
        "mounts": [
            {"destination": "/data", "type": "bind", "source": str(src), "options": ["rbind"]},
            {"destination": "/proc", "type": "proc", "source": "proc", "options": []},
        ]
    }
    data = ContainerData(
        id="c1", spec=spec, io={"stdin": "", "stdout": str(fifo), "stderr": ""}
    )
    with mock.patch("subprocess.run", side_effect=_ok) as run:
        await sandbox.append_container("c1", ContainerOption(data))
    assert len(run.call_args_list) == 2
    container = await sandbox.container("c1")
    assert container.data.io == {"stdin": "", "stdout": "/c1/stdout", "stderr": ""}
    assert [m["type"] for m in container.data.spec["mounts"]] == ["proc"]
    bundle = sandbox.container_bundle("c1")
    assert os.path.isdir(f"{bundle}/rootfs//data")
    assert os.path.isfile(f"{bundle}/stdout")


@pytest.mark.asyncio
async def test_append_container_without_spec(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    with pytest.raises(ValueError, match="no spec"):
        await sandbox.append_container("c1", ContainerOption(ContainerData(id="c1")))


@pytest.mark.asyncio
async def test_missing_container(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    with pytest.raises(NotFoundError, match="no container id c9 found"):
        await sandbox.container("c9")


@pytest.mark.asyncio
async def test_update_container_replaces_processes(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    data = ContainerData(id="c1", spec={}, processes=[ProcessData(id="a")])
    await sandbox.append_container("c1", ContainerOption(data))
    new = ContainerData(id="c1", processes=[ProcessData(id="a"), ProcessData(id="b")])
    await sandbox.update_container("c1", ContainerOption(new))
    container = await sandbox.container("c1")
    assert sorted(p.id for p in container.data.processes) == ["a", "b"]

    await sandbox.update_container(
        "c1", ContainerOption(ContainerData(id="c1", processes=[ProcessData(id="b")]))
    )
    assert [p.id for p in container.data.processes] == ["b"]


@pytest.mark.asyncio
async def test_update_unknown_container(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    with pytest.raises(NotFoundError):
        await sandbox.update_container("nope", ContainerOption(ContainerData()))


@pytest.mark.asyncio
async def test_remove_container(sandboxer, tmp_path):
    sandbox = await _created(sandboxer, tmp_path)
    await sandbox.append_container("c1", ContainerOption(ContainerData(id="c1", spec={})))
    await sandbox.remove_container("c1")
    assert not os.path.exists(sandbox.container_bundle("c1"))
    assert "c1" not in sandbox.containers