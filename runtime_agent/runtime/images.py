"""Image availability for container creation.

Two independent paths make sure the image is present:

1. The ``io.rancher.container.pull_image=always`` label forces a full
   pull before any create attempt.
2. A create that fails because the image is missing triggers a single
   on-demand pull followed by exactly one more create. A second failure
   is final.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Mapping

from runtime_agent.errors import ContainerCreateError, ImagePullError
from runtime_agent.runtime.client import (
    ImageMissingError,
    NameInUseError,
    RuntimeClient,
    RuntimeClientError,
)
from runtime_agent.runtime.translator import PULL_IMAGE_LABEL, normalize_image

if TYPE_CHECKING:
    from runtime_agent.progress import Progress
    from runtime_agent.runtime.translator import DockerContainerSpec
    from runtime_agent.schemas import Credential


logger = logging.getLogger(__name__)

PULL_ALWAYS = "always"


class ImageResolver:
    """Pulls images ahead of, or in response to, container creation."""

    def __init__(self, client: RuntimeClient):
        self.client = client

    async def pull(
        self,
        image: str,
        credential: Credential | None = None,
        progress: Progress | None = None,
    ) -> None:
        image = normalize_image(image)
        logger.info(f"Pulling image {image}")
        try:
            await asyncio.to_thread(self.client.pull_image, image, credential, progress)
        except RuntimeClientError as e:
            raise ImagePullError("pull image", f"{image}: {e}") from e

    async def ensure_image(
        self,
        labels: Mapping[str, str],
        image: str,
        credential: Credential | None = None,
        progress: Progress | None = None,
    ) -> None:
        """Pull up front when the labels ask for always-pull semantics."""
        if labels.get(PULL_IMAGE_LABEL) == PULL_ALWAYS:
            await self.pull(image, credential, progress)

    async def create_with_pull(
        self,
        spec: DockerContainerSpec,
        credential: Credential | None = None,
        progress: Progress | None = None,
    ) -> str:
        """Create the container, pulling its image once if it is missing.

        Raises:
            NameInUseError: The name is taken; left for the caller to resolve
            ImagePullError: The on-demand pull failed
            ContainerCreateError: Create failed (after at most one retry)
        """
        try:
            return await self._create(spec)
        except ImageMissingError:
            logger.info(f"Image {spec.config.image} not present, pulling before retrying create")

        await self.pull(spec.config.image, credential, progress)

        try:
            return await self._create(spec)
        except NameInUseError:
            raise
        except RuntimeClientError as e:
            raise ContainerCreateError("create container", f"{spec.name} after image pull: {e}") from e

    async def _create(self, spec: DockerContainerSpec) -> str:
        try:
            return await asyncio.to_thread(self.client.create, spec, spec.name)
        except (ImageMissingError, NameInUseError):
            raise
        except RuntimeClientError as e:
            raise ContainerCreateError("create container", f"{spec.name}: {e}") from e
