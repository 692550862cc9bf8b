"""Shared fixtures for runtime agent tests.

``FakeEngine`` is an in-memory, thread-safe stand-in for ``RuntimeClient``
that behaves like the engine where the reconciler cares: names are
unique, creates need the image, lookups are cached per uuid with the
same eviction rules, and every call is recorded.
"""
from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import pytest

from runtime_agent.locks import StartLock
from runtime_agent.runtime.client import (
    ContainerNotFoundError,
    ContainerState,
    DockerRootCell,
    EngineInfo,
    ImageMissingError,
    NameInUseError,
)
from runtime_agent.runtime.start import ContainerStarter
from runtime_agent.runtime.translator import UUID_LABEL, container_name
from runtime_agent.runtime.volumes import VolumeBackend
from runtime_agent.schemas import ContainerSpec


SPEC_UUID = "c1b2d3e4-1111-2222-3333-444455556666"


@dataclass
class FakeContainer:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    image: str = ""
    running: bool = False
    restarting: bool = False


class FakeEngine:
    """In-memory container engine."""

    def __init__(self, root_dir: str = "/var/lib/docker", api_version: str = "1.41"):
        self.root_dir = root_dir
        self.api_version = api_version
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = {"nginx:latest"}
        self.calls: list[tuple] = []

        # Failure injection
        self.find_error: Exception | None = None
        self.start_errors: list[Exception] = []
        self.remove_error: Exception | None = None
        self.pull_error: Exception | None = None
        self.pull_adds_image = True
        self.on_create: Callable[[str], None] | None = None

        # Timing
        self.create_delay = 0.0
        self.start_delay = 0.0
        self.active_starts = 0
        self.max_active_starts = 0

        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._cache: dict[str, str] = {}

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def add_container(self, name: str, uuid: str = "", running: bool = False, image: str = "nginx:latest") -> str:
        labels = {UUID_LABEL: uuid} if uuid else {}
        with self._lock:
            container_id = f"{next(self._counter):064x}"
            self.containers[container_id] = FakeContainer(name, labels, image, running)
        return container_id

    # --- RuntimeClient interface ---

    def _forget(self, container_id: str) -> None:
        with self._lock:
            for uuid, cached in list(self._cache.items()):
                if cached == container_id:
                    del self._cache[uuid]

    def find(self, spec: ContainerSpec, force_refresh: bool = False) -> str:
        self._record("find", spec.uuid, force_refresh)
        if self.find_error is not None:
            raise self.find_error
        with self._lock:
            cached = None if force_refresh else self._cache.get(spec.uuid)
            if cached:
                return cached
            # Label match covers both the label and the owned-name lookups
            for container_id, container in self.containers.items():
                if container.labels.get(UUID_LABEL) == spec.uuid:
                    self._cache[spec.uuid] = container_id
                    return container_id
        raise ContainerNotFoundError(f"no container for {spec.uuid}")

    def create(self, docker_spec, name: str) -> str:
        self._record("create", name)
        if self.on_create is not None:
            hook, self.on_create = self.on_create, None
            hook(name)
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._lock:
            if docker_spec.config.image not in self.images:
                raise ImageMissingError(f"No such image: {docker_spec.config.image}")
            if any(c.name == name for c in self.containers.values()):
                raise NameInUseError(f"Conflict. The container name {name} is already in use")
            container_id = f"{next(self._counter):064x}"
            self.containers[container_id] = FakeContainer(
                name, dict(docker_spec.config.labels), docker_spec.config.image
            )
        return container_id

    def start(self, container_id: str) -> None:
        self._record("start", container_id)
        with self._lock:
            self.active_starts += 1
            self.max_active_starts = max(self.max_active_starts, self.active_starts)
            error = self.start_errors.pop(0) if self.start_errors else None
        try:
            if self.start_delay:
                time.sleep(self.start_delay)
            if error is not None:
                raise error
            with self._lock:
                container = self.containers.get(container_id)
                if container is not None:
                    container.running = True
            if container is None:
                self._forget(container_id)
                raise ContainerNotFoundError(container_id)
        finally:
            with self._lock:
                self.active_starts -= 1

    def remove(self, container_id: str) -> None:
        self._record("remove", container_id)
        try:
            if self.remove_error is not None:
                raise self.remove_error
            with self._lock:
                self.containers.pop(container_id, None)
        finally:
            self._forget(container_id)

    def delete_behind_agent(self, container_id: str) -> None:
        """Remove a container without going through the client (cache kept)."""
        with self._lock:
            del self.containers[container_id]

    def inspect(self, container_id: str) -> ContainerState:
        self._record("inspect", container_id)
        with self._lock:
            container = self.containers.get(container_id)
            if container is not None:
                return ContainerState(
                    id=container_id,
                    name=container.name,
                    running=container.running,
                    restarting=container.restarting,
                    labels=dict(container.labels),
                )
        self._forget(container_id)
        raise ContainerNotFoundError(container_id)

    def info(self) -> EngineInfo:
        self._record("info")
        return EngineInfo(root_dir=self.root_dir, api_version=self.api_version)

    def pull_image(self, image: str, credential=None, progress=None) -> None:
        self._record("pull", image, credential)
        if self.pull_error is not None:
            raise self.pull_error
        if self.pull_adds_image:
            with self._lock:
                self.images.add(image)


class FakeVolumeBackend(VolumeBackend):
    """Volume backend that records what it was asked to do."""

    def __init__(self, active: set[str] | None = None):
        self.active = set(active or ())
        self.activated: list[str] = []
        self.mounted: list[str] = []
        self.unmounted: list[str] = []
        self.mount_error: Exception | None = None
        self.activate_error: Exception | None = None

    def is_active(self, volume) -> bool:
        return volume.name in self.active

    def activate(self, volume, progress=None) -> None:
        if self.activate_error is not None:
            raise self.activate_error
        self.activated.append(volume.name)
        self.active.add(volume.name)

    def mount_managed(self, volumes, data_volumes, progress=None) -> list[str]:
        if self.mount_error is not None:
            raise self.mount_error
        self.mounted.extend(v.name for v in volumes)
        return [f"/mnt/flex/{v.name}:/data/{v.name}:rw" for v in volumes]

    def unmount_managed(self, volumes) -> None:
        self.unmounted.extend(v.name for v in volumes)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def backend() -> FakeVolumeBackend:
    return FakeVolumeBackend()


@pytest.fixture
def starter(engine, backend) -> ContainerStarter:
    return ContainerStarter(
        client=engine,
        backend=backend,
        start_lock=StartLock(),
        root_cell=DockerRootCell(engine),
    )


@pytest.fixture
def make_spec() -> Callable[..., ContainerSpec]:
    """Factory for specs that differ from the default in a few fields."""
    def _make(**overrides) -> ContainerSpec:
        fields = {"uuid": SPEC_UUID, "name": "web", "image": "nginx:latest"}
        fields.update(overrides)
        return ContainerSpec(**fields)
    return _make


@pytest.fixture
def spec(make_spec) -> ContainerSpec:
    return make_spec()
