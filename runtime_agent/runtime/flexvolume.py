"""Default volume backend: Docker named volumes + flex volume drivers.

Plain volumes are Docker named volumes, activated by creating them with
their driver and options.

Managed volumes are mounted by flex volume driver executables, one per
driver, at ``{plugin_dir}/{vendor}~{driver}/{driver}``. A driver is run
as ``<driver> mount <mount dir> <json options>`` or
``<driver> unmount <mount dir>`` and answers with a JSON status object::

    {"status": "Success" | "Failure" | "Not supported", "message": "..."}

The mount directory is ``{mount_root}/{driver}/{volume name}`` and is
exposed to the container as a bind mount.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from runtime_agent.config import settings
from runtime_agent.runtime.client import ContainerNotFoundError, RuntimeClient
from runtime_agent.runtime.volumes import DEFAULT_BIND_MODE, VolumeBackend
from runtime_agent.schemas import Volume

if TYPE_CHECKING:
    from runtime_agent.progress import Progress


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "Success"
STATUS_NOT_SUPPORTED = "Not supported"


class FlexVolumeError(Exception):
    """A flex volume driver call failed."""

    def __init__(self, driver: str, operation: str, message: str):
        self.driver = driver
        self.operation = operation
        super().__init__(f"flex volume driver {driver} {operation} failed: {message}")


class FlexVolumeBackend(VolumeBackend):
    """Volume backend over the Docker volume API and flex volume drivers."""

    def __init__(
        self,
        client: RuntimeClient,
        plugin_dir: str | None = None,
        mount_root: str | None = None,
        vendor: str | None = None,
        timeout: float | None = None,
    ):
        self.client = client
        self.plugin_dir = Path(plugin_dir or settings.flex_volume_plugin_dir)
        self.mount_root = Path(mount_root or settings.flex_volume_mount_root)
        self.vendor = vendor or settings.flex_volume_vendor
        self.timeout = timeout or settings.flex_volume_timeout

    # --- Plain volumes ---

    def is_active(self, volume: Volume) -> bool:
        try:
            self.client.inspect_volume(volume.name)
        except ContainerNotFoundError:
            return False
        return True

    def activate(self, volume: Volume, progress: Progress | None = None) -> None:
        if progress is not None:
            progress.update(f"Activating volume {volume.name}", volume=volume.name)
        self.client.create_volume(volume.name, volume.driver, dict(volume.driver_opts))

    # --- Managed volumes ---

    def driver_path(self, driver: str) -> Path:
        return self.plugin_dir / f"{self.vendor}~{driver}" / driver

    def mount_dir(self, volume: Volume) -> Path:
        return self.mount_root / (volume.driver or "default") / volume.name

    def mount_managed(
        self,
        volumes: list[Volume],
        data_volumes: list[str],
        progress: Progress | None = None,
    ) -> list[str]:
        """Mount each managed volume, returning binds for declared targets."""
        binds = []
        for volume in volumes:
            mount_dir = self.mount_dir(volume)
            if progress is not None:
                progress.update(f"Mounting volume {volume.name}", volume=volume.name)

            mount_dir.mkdir(parents=True, exist_ok=True)
            options = {**volume.driver_opts, "name": volume.name}
            self._call(volume.driver, "mount", str(mount_dir), json.dumps(options, sort_keys=True))
            logger.info(f"Mounted volume {volume.name} at {mount_dir}")

            for declaration in data_volumes:
                parts = declaration.split(":", 2)
                if parts[0] != volume.name or len(parts) < 2:
                    continue
                mode = parts[2] if len(parts) == 3 else DEFAULT_BIND_MODE
                binds.append(f"{mount_dir}:{parts[1]}:{mode}")
        return binds

    def unmount_managed(self, volumes: list[Volume]) -> None:
        for volume in volumes:
            mount_dir = self.mount_dir(volume)
            if not mount_dir.exists():
                continue
            try:
                self._call(volume.driver, "unmount", str(mount_dir))
                logger.info(f"Unmounted volume {volume.name} from {mount_dir}")
            except FlexVolumeError as e:
                logger.warning(str(e))

    def _call(self, driver: str, operation: str, *args: str) -> dict:
        path = self.driver_path(driver)
        try:
            result = subprocess.run(
                [str(path), operation, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FlexVolumeError(driver, operation, str(e)) from e

        try:
            reply = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            reply = {}

        status = reply.get("status", "")
        if result.returncode != 0 or status not in (STATUS_SUCCESS, STATUS_NOT_SUPPORTED):
            message = reply.get("message") or result.stderr.strip() or f"exit code {result.returncode}"
            raise FlexVolumeError(driver, operation, message)
        if status == STATUS_NOT_SUPPORTED:
            logger.debug(f"Flex volume driver {driver} does not support {operation}")
        return reply
