"""Sandboxer that runs pods in quark sandboxes."""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import logging
import os
import re
import shutil
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from kuasar.common import Mount
from kuasar.mount import unmount
from kuasar.quark.utils import (
    DEFAULT_MOUNTS,
    bind_mount,
    cleanup_mounts,
    mount_rootfs,
    write_file_atomic,
)

log = logging.getLogger(__name__)

SPEC_TYPE_URL = "types.containerd.io/opencontainers/runtime-spec/1/Spec"
_STDIO = ("stdin", "stdout", "stderr")
_PID_RE = re.compile(r"\+?[0-9]+")


class NotFoundError(LookupError):
    """Raised when a sandbox or container is not known."""


class SandboxState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SandboxStatus:
    """Lifecycle state of a sandbox; ``exited_at`` is in nanoseconds."""

    state: SandboxState = SandboxState.CREATED
    pid: int = 0
    exit_code: int = 0
    exited_at: int = 0


@dataclass
class ProcessData:
    id: str = ""
    io: Optional[dict[str, str]] = None


@dataclass
class ContainerData:
    id: str = ""
    spec: Optional[dict[str, Any]] = None
    rootfs: list[Mount] = field(default_factory=list)
    io: Optional[dict[str, str]] = None
    processes: list[ProcessData] = field(default_factory=list)


@dataclass
class SandboxData:
    """Sandbox request data; ``config`` is a PodSandboxConfig in snake_case JSON form."""

    id: str = ""
    spec: Optional[dict[str, Any]] = None
    config: Optional[Mapping[str, Any]] = None
    netns: str = ""
    task_address: str = ""


@dataclass
class SandboxOption:
    base_dir: str
    sandbox: SandboxData


@dataclass
class ContainerOption:
    container: ContainerData


@dataclass
class QuarkContainer:
    data: ContainerData


def _makedirs(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise OSError(e.errno, f"failed to create {path}, {e.strerror}") from e


def _encode(spec: Mapping[str, Any]) -> bytes:
    return json.dumps(spec, separators=(",", ":")).encode()


@dataclass
class QuarkSandbox:
    id: str
    base_dir: str
    data: SandboxData
    containers: dict[str, QuarkContainer] = field(default_factory=dict)
    exit_signal: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    mounts_path: str = DEFAULT_MOUNTS
    _status: SandboxStatus = field(default_factory=SandboxStatus, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def status(self) -> SandboxStatus:
        return self._status

    async def ping(self) -> None:
        """Check that the sandbox process is alive when it is running."""
        if self._status.state is SandboxState.RUNNING:
            pid = self._status.pid
            try:
                os.kill(pid, 0)
            except OSError as e:
                raise OSError(
                    e.errno, f"failed to send signal 0 to sandbox process {pid}"
                ) from e

    async def container(self, id: str) -> QuarkContainer:
        try:
            return self.containers[id]
        except KeyError:
            raise NotFoundError(f"no container id {id} found") from None

    async def append_container(self, id: str, option: ContainerOption) -> None:
        """Prepare the container bundle: rootfs, bind mounts, io and config.json."""
        bundle = self.container_bundle(id)
        data = option.container
        _makedirs(bundle)
        rootfs = f"{bundle}/rootfs"
        _makedirs(rootfs)

        # rootfs is mounted here, so it is dropped from what the guest sees
        for m in data.rootfs:
            mount_rootfs(m, rootfs)
        data.rootfs = []

        spec = data.spec
        if spec is None:
            raise ValueError("no spec in request")
        unhandled = []
        for raw in spec.get("mounts") or []:
            m = Mount.from_dict(raw)
            if m.type == "bind":
                bind_mount(m.source, f"{rootfs}/{m.destination}", m.options)
            else:
                unhandled.append(raw)
        spec["mounts"] = unhandled

        if data.io is not None:
            for key in _STDIO:
                data.io[key] = self._bind_mount_io(id, None, data.io.get(key, ""), key)

        write_file_atomic(f"{bundle}/config.json", _encode(spec))
        self.containers[id] = QuarkContainer(data)

    async def update_container(self, id: str, option: ContainerOption) -> None:
        """Replace the container's processes with those of ``option``."""
        container = await self.container(id)
        incoming = option.container.processes
        wanted = {p.id for p in incoming}
        for p in container.data.processes:
            if p.id not in wanted and p.io is not None:
                for key in _STDIO:
                    self._bind_unmount_io(p.io.get(key, ""))
        # All known processes are dropped; the requested ones are registered
        # afresh, last one first.
        container.data.processes = []
        added = []
        for p in reversed(incoming):
            if p.io is not None:
                for key in _STDIO:
                    p.io[key] = self._bind_mount_io(id, p.id, p.io.get(key, ""), key)
            added.append(p)
        container.data.processes.extend(added)

    async def remove_container(self, id: str) -> None:
        bundle = self.container_bundle(id)
        cleanup_mounts(bundle, self.mounts_path)
        try:
            shutil.rmtree(bundle)
        except OSError as e:
            raise OSError(e.errno, f"failed to remove bundle {bundle}, {e.strerror}") from e
        self.containers.pop(id, None)

    def get_data(self) -> SandboxData:
        return copy.deepcopy(self.data)

    def sandbox_bundle(self) -> str:
        return f"{self.base_dir}/sandbox"

    def container_bundle(self, id: str) -> str:
        return f"{self.base_dir}/sandbox/{id}"

    def _bind_mount_io(
        self, container_id: str, process_id: Optional[str], io_file: str, stdio_type: str
    ) -> str:
        if not io_file:
            return ""
        name = f"{process_id}-{stdio_type}" if process_id is not None else stdio_type
        bind_mount(io_file, f"{self.container_bundle(container_id)}/{name}", [])
        return f"/{container_id}/{name}"

    def _bind_unmount_io(self, file_path: str) -> None:
        if file_path and os.path.exists(file_path):
            unmount(file_path, 0)


@dataclass
class QuarkSandboxer:
    sandboxes: dict[str, QuarkSandbox] = field(default_factory=dict)
    quark_binary: str = "quark"
    mounts_path: str = DEFAULT_MOUNTS
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def create(self, id: str, option: SandboxOption) -> None:
        """Create the sandbox directories and write its spec to config.json."""
        sandbox = QuarkSandbox(
            id=id,
            base_dir=option.base_dir,
            data=option.sandbox,
            mounts_path=self.mounts_path,
        )
        _makedirs(sandbox.base_dir)
        bundle = sandbox.sandbox_bundle()
        _makedirs(bundle)
        if sandbox.data.spec is None:
            sandbox.data.spec = self.create_spec(sandbox.data)
        spec = sandbox.data.spec
        root = spec.get("root")
        if root:
            root_path = root.get("path", "")
            if not os.path.isabs(root_path):
                absolute_root = f"{bundle}/{root_path}"
                _makedirs(absolute_root)
            else:
                absolute_root = root_path
            _makedirs(f"{absolute_root}/dev")
        write_file_atomic(f"{bundle}/config.json", _encode(spec))
        async with self._lock:
            self.sandboxes[id] = sandbox

    async def start(self, id: str) -> None:
        """Run the quark sandbox command and record the pid it reports."""
        sandbox = await self.sandbox(id)
        async with sandbox._lock:
            bundle = sandbox.sandbox_bundle()
            task_address = f"{sandbox.base_dir}/quark-task.sock"
            pid_path = f"{sandbox.base_dir}/pid"
            cmd = [
                self.quark_binary, "-r", bundle, "sandbox",
                "--task-socket", task_address,
                "--id", id,
                "--pid-file", pid_path,
            ]
            try:
                proc = await asyncio.create_subprocess_exec(*cmd, cwd=bundle)
            except OSError as e:
                raise OSError(
                    e.errno, f"failed to spawn quark sandbox command, {e.strerror}"
                ) from e
            await proc.wait()
            try:
                with open(pid_path, encoding="utf-8") as f:
                    pid_str = f.read()
            except OSError as e:
                raise OSError(e.errno, f"failed to read file {pid_path}, {e.strerror}") from e
            if not _PID_RE.fullmatch(pid_str) or int(pid_str) >= 1 << 32:
                raise ValueError(f"failed to parse pid {pid_str}")
            sandbox._status = SandboxStatus(SandboxState.RUNNING, pid=int(pid_str))
            sandbox.data.task_address = f"unix://{task_address}"

    async def sandbox(self, id: str) -> QuarkSandbox:
        async with self._lock:
            try:
                return self.sandboxes[id]
            except KeyError:
                raise NotFoundError(id) from None

    async def stop(self, id: str, force: bool) -> None:
        """Kill the sandbox process if running and mark the sandbox stopped."""
        sandbox = await self.sandbox(id)
        async with sandbox._lock:
            status = sandbox._status
            if status.state is SandboxState.RUNNING:
                try:
                    os.kill(status.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                except OSError as e:
                    raise OSError(
                        e.errno, f"failed to kill sandbox process {status.pid}, {e.strerror}"
                    ) from e
            sandbox._status = SandboxStatus(
                SandboxState.STOPPED, exit_code=0, exited_at=time.time_ns()
            )
            sandbox.exit_signal.set()

    async def delete(self, id: str) -> None:
        """Unmount everything under the sandbox directory and remove it."""
        sandbox = await self.sandbox(id)
        async with sandbox._lock:
            base_dir = sandbox.base_dir
            try:
                cleanup_mounts(base_dir, sandbox.mounts_path)
            except OSError as e:
                raise OSError(f"failed to cleanup mounts in {base_dir}, {e!r}") from e
            try:
                shutil.rmtree(base_dir)
            except OSError as e:
                raise OSError(
                    e.errno,
                    f"failed to delete sandbox base directory {base_dir}, {e.strerror}",
                ) from e

    def create_spec(self, data: SandboxData) -> dict[str, Any]:
        """Build a runtime spec from the pod sandbox config."""
        config = data.config
        if config is None:
            raise ValueError("no PodSandboxConfig in request")
        linux: dict[str, Any] = {}
        lc = config.get("linux") or {}
        resources = lc.get("resources")
        if resources:
            cpu: dict[str, Any] = {
                "cpus": str(resources.get("cpuset_cpus", "")),
                "mems": str(resources.get("cpuset_mems", "")),
            }
            for src, dst in (
                ("cpu_period", "period"),
                ("cpu_quota", "quota"),
                ("cpu_shares", "shares"),
            ):
                value = int(resources.get(src, 0))
                if value > 0:
                    cpu[dst] = value
            spec_resources: dict[str, Any] = {"cpu": cpu}
            hugepages = [
                {"pageSize": str(h.get("page_size", "")), "limit": int(h.get("limit", 0))}
                for h in resources.get("hugepage_limits") or []
            ]
            if hugepages:
                spec_resources["hugepageLimits"] = hugepages
            linux["resources"] = spec_resources
        if data.netns:
            linux["namespaces"] = [{"type": "network", "path": data.netns}]
        return {
            "linux": linux,
            "process": {
                "terminal": False,
                "user": {"uid": 0, "gid": 0},
                "args": [],
                "env": [],
                "cwd": "/",
            },
            "root": {"path": "rootfs", "readonly": False},
        }


def to_any(spec: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap a runtime spec in an Any-style message."""
    return {"type_url": SPEC_TYPE_URL, "value": _encode(spec)}