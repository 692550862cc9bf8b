"""Container runtime client over the Docker SDK.

The reconciler talks to Docker only through ``RuntimeClient``. Every
engine error is classified here into one of a few structured types so
callers branch on exception classes, never on message text:

- ``ContainerNotFoundError``: the container (or volume) does not exist
- ``NameInUseError``: create hit HTTP 409, the name is bound to another container
- ``ImageMissingError``: create failed because the image is not present
- ``RuntimeClientError``: anything else, including transport failures

All methods block; async callers run them with ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from runtime_agent.config import settings
from runtime_agent.runtime.translator import UUID_LABEL, container_name

if TYPE_CHECKING:
    from runtime_agent.progress import Progress
    from runtime_agent.runtime.translator import DockerContainerSpec
    from runtime_agent.schemas import ContainerSpec, Credential


logger = logging.getLogger(__name__)

DEFAULT_DOCKER_ROOT = "/var/lib/docker"


class RuntimeClientError(Exception):
    """Engine call failed."""


class ContainerNotFoundError(RuntimeClientError):
    """The referenced container does not exist."""


class NameInUseError(RuntimeClientError):
    """The requested container name is already bound to another container."""


class ImageMissingError(RuntimeClientError):
    """The engine does not have the requested image."""


class DockerRootUnavailable(RuntimeClientError):
    """The engine's data root could not be determined."""


@dataclass
class EngineInfo:
    """Subset of ``docker info`` the reconciler needs."""
    root_dir: str
    api_version: str


@dataclass
class ContainerState:
    """Inspected container state."""
    id: str
    name: str
    status: str = ""
    running: bool = False
    restarting: bool = False
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_inspect(cls, attrs: dict[str, Any]) -> ContainerState:
        state = attrs.get("State") or {}
        config = attrs.get("Config") or {}
        return cls(
            id=attrs.get("Id", ""),
            name=(attrs.get("Name") or "").lstrip("/"),
            status=state.get("Status", ""),
            running=bool(state.get("Running")),
            restarting=bool(state.get("Restarting")),
            labels=dict(config.get("Labels") or {}),
        )


@contextmanager
def _engine_errors(action: str, ref: str, name_conflict: bool = False):
    """Translate Docker SDK errors raised inside the block."""
    try:
        yield
    except ImageNotFound as e:
        raise ImageMissingError(f"{action} {ref}: {e.explanation or e}") from e
    except NotFound as e:
        raise ContainerNotFoundError(f"{action} {ref}: {e.explanation or e}") from e
    except APIError as e:
        if name_conflict and e.status_code == 409:
            raise NameInUseError(f"{action} {ref}: {e.explanation or e}") from e
        raise RuntimeClientError(f"{action} {ref}: {e.explanation or e}") from e
    except (DockerException, OSError) as e:
        # requests' transport errors are OSError subclasses
        raise RuntimeClientError(f"{action} {ref}: {e}") from e


class RuntimeClient:
    """Docker-backed implementation of the container runtime interface.

    Container lookups are cached per container uuid; ``find`` with
    ``force_refresh=True`` bypasses the cache. An id the engine reports as
    missing from ``inspect``, ``start`` or ``remove`` is evicted.
    """

    def __init__(self, docker_client: docker.DockerClient | None = None):
        self._docker = docker_client
        self._ids: dict[str, str] = {}
        self._ids_lock = threading.Lock()

    @property
    def docker(self) -> docker.DockerClient:
        """Lazy-initialize Docker client with extended timeout for slow operations."""
        if self._docker is None:
            self._docker = docker.DockerClient(
                base_url=settings.docker_socket,
                timeout=settings.docker_client_timeout,
                version="auto",
            )
        return self._docker

    @property
    def api(self) -> docker.APIClient:
        return self.docker.api

    @property
    def api_version(self) -> str:
        """Negotiated engine API version (no round trip once negotiated)."""
        with _engine_errors("negotiate", "api version"):
            return self.api.api_version

    # --- Containers ---

    def find(self, spec: ContainerSpec, force_refresh: bool = False) -> str:
        """Resolve the engine id of the container for ``spec``.

        Looks at, in order: the cache, the spec's external id, the uuid
        label, and the derived container name. A container found by name only
        counts when it carries this spec's uuid label.

        Raises:
            ContainerNotFoundError: No container matches
            RuntimeClientError: The engine could not be queried
        """
        if not force_refresh:
            with self._ids_lock:
                cached = self._ids.get(spec.uuid)
            if cached:
                return cached

        container_id = self._lookup(spec)
        if not container_id:
            raise ContainerNotFoundError(f"no container for {spec.uuid}")

        with self._ids_lock:
            self._ids[spec.uuid] = container_id
        return container_id

    def _lookup(self, spec: ContainerSpec) -> str:
        if spec.external_id:
            try:
                return self.inspect(spec.external_id).id
            except ContainerNotFoundError:
                pass

        with _engine_errors("list containers for", spec.uuid):
            matches = self.api.containers(
                all=True, filters={"label": f"{UUID_LABEL}={spec.uuid}"}
            )
        if matches:
            return matches[0]["Id"]

        name = container_name(spec)
        try:
            state = self.inspect(name)
        except ContainerNotFoundError:
            return ""
        owner = state.labels.get(UUID_LABEL, "")
        if owner != spec.uuid:
            logger.warning(
                f"Container {name} ({state.id[:12]}) belongs to "
                f"{owner or 'an unmanaged container'}, not {spec.uuid}"
            )
            return ""
        return state.id

    def _forget(self, container_id: str) -> None:
        """Drop cache entries that point at ``container_id``."""
        with self._ids_lock:
            for uuid, cached in list(self._ids.items()):
                if cached == container_id:
                    del self._ids[uuid]

    def create(self, spec: DockerContainerSpec, name: str) -> str:
        """Create a container and return its id."""
        with _engine_errors("create container", name, name_conflict=True):
            response = self.api.create_container_from_config(spec.to_api(), name=name)
        for warning in response.get("Warnings") or []:
            logger.warning(f"Docker warning creating {name}: {warning}")
        return response["Id"]

    def start(self, container_id: str) -> None:
        try:
            with _engine_errors("start container", container_id):
                self.api.start(container_id)
        except ContainerNotFoundError:
            self._forget(container_id)
            raise

    def remove(self, container_id: str) -> None:
        try:
            with _engine_errors("remove container", container_id):
                self.api.remove_container(container_id, v=True, force=True)
        finally:
            self._forget(container_id)

    def inspect(self, container_id: str) -> ContainerState:
        try:
            with _engine_errors("inspect container", container_id):
                attrs = self.api.inspect_container(container_id)
        except ContainerNotFoundError:
            self._forget(container_id)
            raise
        return ContainerState.from_inspect(attrs)

    # --- Engine ---

    def info(self) -> EngineInfo:
        with _engine_errors("query", "engine info"):
            data = self.api.info()
        return EngineInfo(
            root_dir=data.get("DockerRootDir") or DEFAULT_DOCKER_ROOT,
            api_version=self.api_version,
        )

    # --- Images ---

    def pull_image(
        self,
        image: str,
        credential: Credential | None = None,
        progress: Progress | None = None,
    ) -> None:
        """Pull ``image`` and relay layer status to ``progress``.

        Docker reports pull failures inside the response stream, not as
        an HTTP status, so each chunk is checked for an ``error`` key.
        """
        repository, tag = parse_repository_tag(image)
        auth = credential.auth_config() if credential else None
        seen: set[tuple[str, str]] = set()

        with _engine_errors("pull image", image):
            for chunk in self.api.pull(
                repository,
                tag=tag or "latest",
                auth_config=auth,
                stream=True,
                decode=True,
            ):
                if "error" in chunk:
                    raise RuntimeClientError(f"pull image {image}: {chunk['error']}")
                status = chunk.get("status", "")
                key = (chunk.get("id", ""), status)
                if progress is not None and status and key not in seen:
                    seen.add(key)
                    progress.update(
                        f"Pulling {image}: {' '.join(p for p in key if p)}",
                        image=image,
                    )
        logger.info(f"Pulled image {image}")

    # --- Volumes ---

    def inspect_volume(self, name: str) -> dict[str, Any]:
        with _engine_errors("inspect volume", name):
            return self.api.inspect_volume(name)

    def create_volume(self, name: str, driver: str = "", driver_opts: dict[str, str] | None = None) -> dict[str, Any]:
        with _engine_errors("create volume", name):
            return self.api.create_volume(
                name=name,
                driver=driver or None,
                driver_opts=driver_opts or None,
            )


class DockerRootCell:
    """Initialise-once holder for the engine's real data root.

    The first ``get`` queries ``docker info``; every later call,
    concurrent ones included, returns the cached value without another
    engine round trip. A failed query is remembered too: later calls
    raise a new ``DockerRootUnavailable`` chained to the original engine
    error, without querying again.
    """

    def __init__(self, client: RuntimeClient):
        self._client = client
        self._lock = threading.Lock()
        self._done = False
        self._root: str = ""
        self._error: DockerRootUnavailable | None = None

    def get(self) -> str:
        if not self._done:
            with self._lock:
                if not self._done:
                    self._resolve()
        if self._error is not None:
            raise DockerRootUnavailable(str(self._error)) from self._error.__cause__
        return self._root

    def _resolve(self) -> None:
        try:
            self._root = self._client.info().root_dir
            logger.info(f"Docker root directory is {self._root}")
        except RuntimeClientError as e:
            self._error = DockerRootUnavailable(f"cannot determine docker root: {e}")
            self._error.__cause__ = e
            logger.error(str(self._error))
        finally:
            self._done = True

    @property
    def resolved(self) -> bool:
        """Whether the lookup has already happened (successfully or not)."""
        return self._done


_root_cell: DockerRootCell | None = None
_root_cell_lock = threading.Lock()


def get_docker_root_cell(client: RuntimeClient) -> DockerRootCell:
    """Get the process-wide docker root cell, bound to the first client seen."""
    global _root_cell
    with _root_cell_lock:
        if _root_cell is None:
            _root_cell = DockerRootCell(client)
        return _root_cell
