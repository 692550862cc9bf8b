"""Container state queries."""

from __future__ import annotations

import asyncio

from runtime_agent.errors import ContainerLookupError
from runtime_agent.runtime.client import ContainerNotFoundError, RuntimeClient, RuntimeClientError


async def is_running(client: RuntimeClient, container_id: str) -> tuple[bool, bool]:
    """Classify a container as (running, restarting).

    A container that is restarting is not considered running. A missing
    id or a container the engine does not know is ``(False, False)``.

    Raises:
        ContainerLookupError: Inspection failed for another reason
    """
    if not container_id:
        return False, False
    try:
        state = await asyncio.to_thread(client.inspect, container_id)
    except ContainerNotFoundError:
        return False, False
    except RuntimeClientError as e:
        raise ContainerLookupError("inspect container", f"{container_id}: {e}") from e
    return state.running and not state.restarting, state.restarting
