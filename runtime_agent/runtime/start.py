"""Container create/start reconciliation.

``ContainerStarter.start_container`` drives one container from whatever
state the engine holds towards "started":

    Absent ──create──> Created ──start──> Started
      │                   │
      └─ name in use ─────┘ (adopt the container that won the race)

Sequence of one reconciliation:

1. Mount managed volumes. From here on, every exit other than success
   unmounts them again.
2. Provision plain volumes and compute the volume layout.
3. Translate the spec into Docker configuration.
4. Look for an existing container (not-found is not an error). An id
   that no longer exists on the engine is looked up again from scratch.
5. If absent, create it: pulling the image first when the labels ask
   for it, or once on demand when the engine reports it missing. If
   another reconciliation created the same container first (name in
   use), re-resolve with a fresh lookup and adopt it.
6. Start it under the process-wide start lock. If the start fails and
   this call created the container, remove it again.

Engine calls block and run in worker threads via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Iterable, Mapping

from runtime_agent.errors import (
    ContainerCreateError,
    ContainerLookupError,
    ContainerStartError,
)
from runtime_agent.locks import StartLock, get_start_lock
from runtime_agent.runtime.client import (
    ContainerNotFoundError,
    DockerRootCell,
    NameInUseError,
    RuntimeClient,
    RuntimeClientError,
    get_docker_root_cell,
)
from runtime_agent.runtime.flexvolume import FlexVolumeBackend
from runtime_agent.runtime.images import ImageResolver
from runtime_agent.runtime.state import is_running
from runtime_agent.runtime.translator import (
    DockerContainerSpec,
    container_name,
    translate,
)
from runtime_agent.runtime.volumes import VolumeBackend, VolumeProvisioner
from runtime_agent.schemas import ContainerSpec, Credential, Volume

if TYPE_CHECKING:
    from runtime_agent.progress import Progress


logger = logging.getLogger(__name__)


def select_credential(credentials: Iterable[Credential], credential_id: str) -> Credential:
    """Registry credential with ``credential_id``, or an empty one."""
    if credential_id:
        for credential in credentials:
            if credential.id == credential_id:
                return credential
    return Credential()


class ContainerStarter:
    """Reconciles container specifications against the local engine."""

    def __init__(
        self,
        client: RuntimeClient | None = None,
        backend: VolumeBackend | None = None,
        start_lock: StartLock | None = None,
        root_cell: DockerRootCell | None = None,
    ):
        self.client = client or RuntimeClient()
        self.backend = backend or FlexVolumeBackend(self.client)
        self.start_lock = start_lock or get_start_lock()
        self.root_cell = root_cell or get_docker_root_cell(self.client)
        self.volumes = VolumeProvisioner(self.backend, self.root_cell)
        self.images = ImageResolver(self.client)

    async def start_container(
        self,
        spec: ContainerSpec,
        volumes: list[Volume] | None = None,
        network_kind: str = "",
        credentials: Iterable[Credential] = (),
        ids_map: Mapping[str, str] | None = None,
        progress: Progress | None = None,
    ) -> str:
        """Make sure exactly one started container exists for ``spec``.

        Returns:
            The engine container id

        Raises:
            TranslationError: The spec's identity is malformed
            VolumeActivationError: Volumes could not be mounted or activated
            ImagePullError: A required image pull failed
            ContainerCreateError: The container could not be created
            ContainerStartError: The container could not be started
            ContainerLookupError: The engine could not be queried
        """
        volumes = list(volumes or [])
        ids_map = ids_map or {}
        name = container_name(spec)
        log_extra = {"container_uuid": spec.uuid, "container_name": name}

        started = False
        try:
            managed_binds = await self.volumes.mount_managed(spec, volumes, progress)
            layout = await self.volumes.provision(spec, volumes, managed_binds, ids_map, progress)
            docker_spec = translate(
                spec,
                layout,
                network_kind=network_kind,
                ids_map=ids_map,
                api_version=await self._api_version(),
            )

            created = False
            container_id, running = await self._resolve_existing(spec)
            if container_id:
                if running:
                    logger.info(f"Container {name} already running as {container_id[:12]}", extra=log_extra)
                    started = True
                    return container_id
            else:
                container_id, created = await self._create(spec, docker_spec, credentials, progress)

            await self._start(container_id, created)

            logger.info(
                f"Container {name} ({spec.id or spec.uuid}) started with docker id {container_id[:12]}",
                extra={**log_extra, "docker_id": container_id},
            )
            started = True
            return container_id
        finally:
            if not started:
                await self.volumes.release_managed(volumes)

    async def is_container_started(self, spec: ContainerSpec) -> tuple[bool, bool]:
        """Return (running, restarting) for the container of ``spec``."""
        container_id = await self._find(spec)
        return await is_running(self.client, container_id)

    async def _api_version(self) -> str:
        try:
            return await asyncio.to_thread(lambda: self.client.api_version)
        except RuntimeClientError as e:
            raise ContainerLookupError("query engine version", str(e)) from e

    async def _find(self, spec: ContainerSpec, force_refresh: bool = False) -> str:
        """Engine id for ``spec``, or "" when no container exists."""
        try:
            return await asyncio.to_thread(self.client.find, spec, force_refresh)
        except ContainerNotFoundError:
            return ""
        except RuntimeClientError as e:
            raise ContainerLookupError("find container", f"{spec.uuid}: {e}") from e

    async def _resolve_existing(self, spec: ContainerSpec) -> tuple[str, bool]:
        """Existing container for ``spec`` as (id, running); ("", False) if absent.

        A looked-up id whose container has since disappeared (removed
        behind the agent's back) is re-resolved against the engine.
        """
        container_id = await self._find(spec)
        if not container_id:
            return "", False
        try:
            state = await asyncio.to_thread(self.client.inspect, container_id)
        except ContainerNotFoundError:
            logger.info(
                f"Container {container_id[:12]} for {spec.uuid} is gone, looking it up again",
                extra={"container_uuid": spec.uuid, "docker_id": container_id},
            )
            container_id = await self._find(spec, force_refresh=True)
            running, _ = await is_running(self.client, container_id)
            return container_id, running
        except RuntimeClientError as e:
            raise ContainerLookupError("inspect container", f"{container_id}: {e}") from e
        return container_id, state.running and not state.restarting

    async def _create(
        self,
        spec: ContainerSpec,
        docker_spec: DockerContainerSpec,
        credentials: Iterable[Credential],
        progress: Progress | None,
    ) -> tuple[str, bool]:
        """Create the container; returns (id, created_by_this_call)."""
        if spec.external_id:
            raise ContainerCreateError(
                "create container",
                f"container {spec.external_id} has been deleted from the host",
            )

        credential = select_credential(credentials, spec.registry_credential_id)
        await self.images.ensure_image(docker_spec.config.labels, spec.image, credential, progress)

        try:
            container_id = await self.images.create_with_pull(docker_spec, credential, progress)
            logger.info(
                f"Created container {docker_spec.name} as {container_id[:12]}",
                extra={"container_uuid": spec.uuid, "container_name": docker_spec.name, "docker_id": container_id},
            )
            return container_id, True
        except NameInUseError:
            logger.info(f"Container name {docker_spec.name} already in use, adopting existing container")

        container_id = await self._find(spec, force_refresh=True)
        if not container_id:
            raise ContainerCreateError(
                "create container",
                f"name {docker_spec.name} is in use but no container matches {spec.uuid}",
            )
        # find only returns containers labelled with this uuid: identity is
        # verified, configuration drift is neither rejected nor repaired
        return container_id, False

    async def _start(self, container_id: str, created: bool) -> None:
        try:
            await asyncio.to_thread(
                self.start_lock.serialize, partial(self.client.start, container_id), container_id
            )
        except RuntimeClientError as start_err:
            if created:
                try:
                    await asyncio.to_thread(self.client.remove, container_id)
                except RuntimeClientError as remove_err:
                    raise ContainerStartError(
                        "remove container",
                        f"{container_id} after failed start ({start_err}): {remove_err}",
                    ) from remove_err
                logger.info(f"Removed container {container_id[:12]} after failed start")
            raise ContainerStartError("start container", f"{container_id}: {start_err}") from start_err


# Singleton instance for the agent
_starter: ContainerStarter | None = None


def get_container_starter() -> ContainerStarter:
    """Lazy-initialize the agent's container starter."""
    global _starter
    if _starter is None:
        _starter = ContainerStarter()
    return _starter
