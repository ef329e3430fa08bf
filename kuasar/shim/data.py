"""Per-sandbox bookkeeping of containers and exec processes held by the shim."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ShimError(Exception):
    """Raised for failures inside the shim."""


@dataclass
class ProcessData(Generic[T]):
    """An exec process and the io transport serving it."""

    id: str = ""
    io: Optional[T] = None


@dataclass
class ContainerData(Generic[T]):
    """A container, its io transport and its exec processes."""

    id: str = ""
    io: Optional[T] = None
    processes: list[ProcessData[T]] = field(default_factory=list)

    def add_process_data(self, process_data: ProcessData[T]) -> None:
        self.processes.append(process_data)

    def get_process_data(self, exec_id: str) -> ProcessData[T]:
        """Return the process with ``exec_id``; raise ShimError if there is none."""
        for process in self.processes:
            if process.id == exec_id:
                return process
        raise ShimError(f"can't get process by exec_id {exec_id}")

    def delete_process_data(self, exec_id: str) -> None:
        self.processes = [p for p in self.processes if p.id != exec_id]


@dataclass
class SandboxData(Generic[T]):
    """All containers known to the shim for one sandbox."""

    containers: list[ContainerData[T]] = field(default_factory=list)

    def add_container_data(self, container_data: ContainerData[T]) -> None:
        self.containers.append(container_data)

    def get_container_data(self, id: str) -> ContainerData[T]:
        """Return the container with ``id``; raise ShimError if there is none."""
        for container in self.containers:
            if container.id == id:
                return container
        raise ShimError(f"can't get container by id {id}")

    def delete_container_data(self, id: str) -> None:
        self.containers = [c for c in self.containers if c.id != id]