"""Agent-Controller protocol schemas.

These Pydantic models define the container specifications the control
plane sends to the agent and the responses the agent returns. Input
models are frozen: the reconciler only ever reads them.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from runtime_agent.version import __version__


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Container specification ---

class PublicEndpoint(_Frozen):
    """A port the container publishes."""
    private_port: int = 0
    public_port: int | None = None
    protocol: str = "tcp"
    bind_ip_address: str = ""


class Ulimit(_Frozen):
    name: str
    soft: int | None = None
    hard: int | None = None


class LogConfig(_Frozen):
    driver: str = ""
    config: dict[str, str] = Field(default_factory=dict)


class RestartPolicy(_Frozen):
    name: str = ""
    maximum_retry_count: int = 0


class ContainerSpec(_Frozen):
    """Declarative description of the container to reconcile."""

    # Identity
    id: str = ""
    uuid: str
    name: str = ""
    external_id: str = ""  # Engine id from an earlier reconciliation, if any

    # Process
    image: str
    command: list[str] = Field(default_factory=list)
    entry_point: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    working_dir: str = ""
    user: str = ""
    tty: bool = False
    stdin_open: bool = True
    domain_name: str = ""
    hostname: str = ""
    stop_signal: str = ""
    stop_timeout: int = 0  # seconds

    # Networking
    public_endpoints: list[PublicEndpoint] = Field(default_factory=list)
    network_container_id: str = ""
    dns: list[str] = Field(default_factory=list)
    dns_search: list[str] = Field(default_factory=list)
    extra_hosts: list[str] = Field(default_factory=list)

    # Volumes
    data_volumes: list[str] = Field(default_factory=list)  # source[:target[:mode]]
    data_volumes_from: list[str] = Field(default_factory=list)

    # Registry
    registry_credential_id: str = ""

    # Host options
    privileged: bool = False
    read_only: bool = False
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)
    pid_mode: str = ""
    ipc_mode: str = ""
    uts: str = ""
    cgroup_parent: str = ""
    security_opt: list[str] = Field(default_factory=list)
    devices: list[str] = Field(default_factory=list)  # host[:container[:perms]]
    group_add: list[str] = Field(default_factory=list)
    restart_policy: RestartPolicy | None = None
    log_config: LogConfig | None = None
    tmpfs: dict[str, str] = Field(default_factory=dict)
    sysctls: dict[str, str] = Field(default_factory=dict)
    storage_opt: dict[str, str] = Field(default_factory=dict)
    ulimits: list[Ulimit] = Field(default_factory=list)

    # Resource limits
    memory: int = 0
    memory_swap: int = 0
    memory_reservation: int = 0
    cpu_shares: int = 0
    cpu_set: str = ""
    cpu_quota: int = 0
    cpu_period: int = 0
    pids_limit: int = 0
    blkio_weight: int = 0
    shm_size: int = 0
    oom_kill_disable: bool = False

    # Health check (seconds / count)
    health_cmd: list[str] = Field(default_factory=list)
    health_interval: int = 0
    health_timeout: int = 0
    health_retries: int = 0

    labels: dict[str, str] = Field(default_factory=dict)


class Volume(_Frozen):
    """A volume the container uses.

    ``managed`` volumes are mounted through a flex volume driver before
    the container is created; plain volumes are Docker named volumes
    that only need to exist.
    """
    name: str
    driver: str = ""
    driver_opts: dict[str, str] = Field(default_factory=dict)
    managed: bool = False


class Credential(_Frozen):
    """Registry credential."""
    id: str = ""
    public_value: str = ""  # username
    secret_value: str = ""  # password
    server_address: str = ""

    def auth_config(self) -> dict[str, str] | None:
        """Docker ``auth_config`` for this credential, None when empty."""
        if not self.public_value and not self.secret_value:
            return None
        auth = {"username": self.public_value, "password": self.secret_value}
        if self.server_address:
            auth["serveraddress"] = self.server_address
        return auth


# --- Requests / responses ---

class StartContainerRequest(BaseModel):
    """Controller -> Agent: make this container run on this host."""
    container: ContainerSpec
    volumes: list[Volume] = Field(default_factory=list)
    network_kind: str = ""
    credentials: list[Credential] = Field(default_factory=list)
    ids_map: dict[str, str] = Field(default_factory=dict)


class StartContainerResponse(BaseModel):
    """Agent -> Controller: reconciliation result."""
    success: bool
    container_id: str | None = None
    error: dict[str, Any] | None = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)


class ContainerStatusRequest(BaseModel):
    """Controller -> Agent: is this container running?"""
    container: ContainerSpec


class ContainerStatusResponse(BaseModel):
    running: bool
    restarting: bool
    error: dict[str, Any] | None = None


class AgentInfo(BaseModel):
    """Agent identification."""
    agent_id: str
    address: str
    version: str = __version__
    started_at: datetime | None = None
