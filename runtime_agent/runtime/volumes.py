"""Volume provisioning for container reconciliation.

Volumes come in two kinds:

- Managed volumes are mounted on the host through a volume backend
  (flex volume drivers) before the container is created, and handed to
  the container as host bind mounts. If the reconciliation does not end
  with a started container they are unmounted again.
- Plain volumes are engine named volumes; they only have to exist
  ("be active") before create.

Data volume declarations (``source[:target[:mode]]``) that do not name a
managed volume become anonymous volumes or bind mounts.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Iterable, Mapping

from runtime_agent.errors import VolumeActivationError
from runtime_agent.runtime.client import DockerRootUnavailable
from runtime_agent.runtime.translator import VolumeLayout
from runtime_agent.schemas import ContainerSpec, Volume

if TYPE_CHECKING:
    from runtime_agent.progress import Progress
    from runtime_agent.runtime.client import DockerRootCell


logger = logging.getLogger(__name__)

# The conventional engine data root; a bind of it onto itself is
# redirected to wherever the engine really keeps its data.
DOCKER_ROOT_PATH = "/var/lib/docker"

DEFAULT_BIND_MODE = "rw"


class VolumeBackend(ABC):
    """Volume backend the provisioner drives."""

    @abstractmethod
    def is_active(self, volume: Volume) -> bool:
        """Whether a plain volume already exists on this host."""
        ...

    @abstractmethod
    def activate(self, volume: Volume, progress: Progress | None = None) -> None:
        """Make a plain volume exist on this host."""
        ...

    @abstractmethod
    def mount_managed(
        self,
        volumes: list[Volume],
        data_volumes: list[str],
        progress: Progress | None = None,
    ) -> list[str]:
        """Mount managed volumes and return the bind mounts that expose them."""
        ...

    @abstractmethod
    def unmount_managed(self, volumes: list[Volume]) -> None:
        """Unmount managed volumes. Best-effort: must not raise."""
        ...


def split_volumes(volumes: Iterable[Volume]) -> tuple[list[Volume], list[Volume]]:
    """Partition volumes into (managed, plain)."""
    managed: list[Volume] = []
    plain: list[Volume] = []
    for volume in volumes:
        (managed if volume.managed else plain).append(volume)
    return managed, plain


def build_binds(
    data_volumes: Iterable[str],
    managed_names: set[str],
    docker_root: Callable[[], str],
) -> tuple[list[str], list[str]]:
    """Compute bind mounts and anonymous volume targets.

    ``docker_root`` is only called when a ``/var/lib/docker`` self-bind
    is declared.

    Returns:
        (binds, volume_targets) in declaration order
    """
    binds: list[str] = []
    targets: list[str] = []

    for declaration in data_volumes:
        parts = declaration.split(":", 2)
        if parts[0] in managed_names:
            continue

        if len(parts) == 1:
            targets.append(parts[0])
            continue

        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) == 3 else DEFAULT_BIND_MODE
        targets.append(target)

        if source == DOCKER_ROOT_PATH and target == DOCKER_ROOT_PATH:
            root = docker_root()
            if root != DOCKER_ROOT_PATH:
                targets.append(root)
                binds.append(f"{root}:{target}:{mode}")
                binds.append(f"{root}:{root}:{mode}")
                continue

        binds.append(f"{source}:{target}:{mode}")

    return binds, list(dict.fromkeys(targets))


def resolve_volumes_from(references: Iterable[str], ids_map: Mapping[str, str]) -> list[str]:
    """Map volumes-from references to engine ids, dropping unknown ones."""
    resolved = []
    for reference in references:
        container_id = ids_map.get(reference)
        if container_id:
            resolved.append(container_id)
        else:
            logger.debug(f"Skipping volumes-from {reference!r}: not on this host")
    return resolved


class VolumeProvisioner:
    """Sequences volume work for one reconciliation at a time.

    Blocking backend and engine calls run in worker threads.
    """

    def __init__(self, backend: VolumeBackend, root_cell: DockerRootCell):
        self.backend = backend
        self.root_cell = root_cell

    async def mount_managed(
        self,
        spec: ContainerSpec,
        volumes: list[Volume],
        progress: Progress | None = None,
    ) -> list[str]:
        """Mount the managed volumes up front; returns their bind mounts."""
        managed, _ = split_volumes(volumes)
        if not managed:
            return []
        try:
            binds = await asyncio.to_thread(
                self.backend.mount_managed, managed, list(spec.data_volumes), progress
            )
        except Exception as e:
            raise VolumeActivationError(
                "mount managed volumes", f"{[v.name for v in managed]}: {e}"
            ) from e
        logger.info(f"Mounted {len(managed)} managed volume(s) for {spec.uuid}")
        return binds

    async def provision(
        self,
        spec: ContainerSpec,
        volumes: list[Volume],
        managed_binds: list[str],
        ids_map: Mapping[str, str] | None = None,
        progress: Progress | None = None,
    ) -> VolumeLayout:
        """Compute the volume layout and activate plain volumes.

        Raises:
            VolumeActivationError: A plain volume could not be checked or
                activated, or the engine root could not be determined
        """
        managed, plain = split_volumes(volumes)
        managed_names = {v.name for v in managed}

        try:
            binds, targets = await asyncio.to_thread(
                build_binds, spec.data_volumes, managed_names, self.root_cell.get
            )
        except DockerRootUnavailable as e:
            raise VolumeActivationError("resolve docker root", str(e)) from e

        layout = VolumeLayout(
            managed_binds=list(managed_binds),
            binds=binds,
            volume_targets=targets,
            volumes_from=resolve_volumes_from(spec.data_volumes_from, ids_map or {}),
        )

        for volume in plain:
            await self._activate(volume, progress)

        return layout

    async def _activate(self, volume: Volume, progress: Progress | None) -> None:
        try:
            active = await asyncio.to_thread(self.backend.is_active, volume)
        except Exception as e:
            raise VolumeActivationError(
                "check volume", f"{volume.name}: {e}"
            ) from e
        if active:
            return

        logger.info(f"Activating volume {volume.name}")
        try:
            await asyncio.to_thread(self.backend.activate, volume, progress)
        except Exception as e:
            raise VolumeActivationError("activate volume", f"{volume.name}: {e}") from e

    async def release_managed(self, volumes: list[Volume]) -> None:
        """Unmount managed volumes after an unsuccessful reconciliation.

        Safe to call when nothing was mounted. Never raises; a failure is
        logged.
        """
        managed, _ = split_volumes(volumes)
        if not managed:
            return
        try:
            await asyncio.to_thread(self.backend.unmount_managed, managed)
            logger.info(f"Released managed volumes {[v.name for v in managed]}")
        except Exception as e:
            logger.warning(f"Failed to release managed volumes {[v.name for v in managed]}: {e}")
