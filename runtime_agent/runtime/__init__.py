"""Container runtime reconciliation against the local Docker engine."""

from runtime_agent.runtime.client import (
    ContainerNotFoundError,
    ContainerState,
    DockerRootCell,
    EngineInfo,
    ImageMissingError,
    NameInUseError,
    RuntimeClient,
    RuntimeClientError,
)
from runtime_agent.runtime.images import ImageResolver
from runtime_agent.runtime.start import ContainerStarter, get_container_starter
from runtime_agent.runtime.state import is_running
from runtime_agent.runtime.translator import (
    ContainerConfig,
    DockerContainerSpec,
    HostConfig,
    VolumeLayout,
    container_name,
    translate,
)
from runtime_agent.runtime.volumes import VolumeBackend, VolumeProvisioner

__all__ = [
    # Engine client
    "RuntimeClient",
    "RuntimeClientError",
    "ContainerNotFoundError",
    "NameInUseError",
    "ImageMissingError",
    "ContainerState",
    "EngineInfo",
    "DockerRootCell",
    # Translation
    "translate",
    "container_name",
    "ContainerConfig",
    "HostConfig",
    "DockerContainerSpec",
    "VolumeLayout",
    # Reconciliation
    "ContainerStarter",
    "get_container_starter",
    "ImageResolver",
    "VolumeBackend",
    "VolumeProvisioner",
    "is_running",
]
