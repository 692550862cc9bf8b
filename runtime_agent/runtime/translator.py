"""Container specification to Docker configuration translation.

``translate`` turns a ``ContainerSpec`` plus an already-provisioned
``VolumeLayout`` into the two Docker Engine API structures a create call
needs: the container config and its host config. It performs no I/O, so
translating the same input twice yields identical output.

The result is built by a fixed pipeline of ``setup_*`` steps. Each step
receives the structures it writes to explicitly; every map inside them
exists from construction, so no step checks whether a map is present.
"""

from __future__ import annotations

import logging
import os
import re
import uuid as uuidlib
from dataclasses import dataclass, field
from typing import Any, Mapping

from docker.utils import parse_devices, version_gte

from runtime_agent.errors import TranslationError
from runtime_agent.schemas import ContainerSpec


logger = logging.getLogger(__name__)

# Label keys understood by the reconciler
UUID_LABEL = "io.rancher.container.uuid"
PULL_IMAGE_LABEL = "io.rancher.container.pull_image"
SYSTEM_LABEL = "io.rancher.container.system"
STACK_NAME_LABEL = "io.rancher.stack.name"
SERVICE_NAME_LABEL = "io.rancher.stack_service.name"

# Network kinds sent by the control plane
NETWORK_NONE = "none"
NETWORK_HOST = "host"
NETWORK_BRIDGE = "bridge"
NETWORK_CONTAINER = "container"
NETWORK_MANAGED = "managed"

INTERNAL_DNS_DOMAIN = "rancher.internal"

# Container names the engine accepts verbatim
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")

# First engine API version with a per-container stop timeout
STOP_TIMEOUT_MIN_API = "1.25"

HTTP_PROXY_VARS = ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "no_proxy", "NO_PROXY")

IMAGE_PREFIX = "docker:"

NANOSECONDS = 1_000_000_000


def _uuid_prefix(spec: ContainerSpec) -> str:
    try:
        uuidlib.UUID(spec.uuid)
    except (TypeError, ValueError) as e:
        raise TranslationError("parse uuid", f"invalid container uuid {spec.uuid!r}") from e
    return spec.uuid.split("-")[0]


def container_name(spec: ContainerSpec) -> str:
    """Derive the engine container name for a spec.

    ``r-<name>-<uuid prefix>`` when the spec's name is a valid engine
    name, otherwise ``r-<uuid>``. Depends only on uuid and name.
    """
    prefix = _uuid_prefix(spec)
    if spec.name and NAME_PATTERN.match(spec.name):
        return f"r-{spec.name}-{prefix}"
    return f"r-{spec.uuid}"


def normalize_image(image: str) -> str:
    """Strip the control plane's ``docker:`` scheme from an image reference."""
    if image.startswith(IMAGE_PREFIX):
        return image[len(IMAGE_PREFIX):]
    return image


@dataclass
class VolumeLayout:
    """Volume configuration computed by the volume provisioner."""
    managed_binds: list[str] = field(default_factory=list)
    binds: list[str] = field(default_factory=list)
    volume_targets: list[str] = field(default_factory=list)
    volumes_from: list[str] = field(default_factory=list)


@dataclass
class ContainerConfig:
    """Docker ``Config`` section of a create request."""
    image: str = ""
    hostname: str = ""
    domainname: str = ""
    user: str = ""
    working_dir: str = ""
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    tty: bool = False
    open_stdin: bool = True
    stop_signal: str = ""
    stop_timeout: int | None = None
    healthcheck: dict[str, Any] | None = None
    labels: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, dict] = field(default_factory=dict)
    exposed_ports: dict[str, dict] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "Image": self.image,
            "Tty": self.tty,
            "OpenStdin": self.open_stdin,
            "AttachStdin": False,
            "AttachStdout": False,
            "AttachStderr": False,
            "Labels": dict(self.labels),
        }
        optional = {
            "Hostname": self.hostname,
            "Domainname": self.domainname,
            "User": self.user,
            "WorkingDir": self.working_dir,
            "Cmd": list(self.cmd),
            "Entrypoint": list(self.entrypoint),
            "Env": list(self.env),
            "StopSignal": self.stop_signal,
            "Volumes": dict(self.volumes),
            "ExposedPorts": dict(self.exposed_ports),
        }
        body.update({k: v for k, v in optional.items() if v})
        if self.stop_timeout is not None:
            body["StopTimeout"] = self.stop_timeout
        if self.healthcheck is not None:
            body["Healthcheck"] = dict(self.healthcheck)
        return body


@dataclass
class HostConfig:
    """Docker ``HostConfig`` section of a create request."""
    binds: list[str] = field(default_factory=list)
    volumes_from: list[str] = field(default_factory=list)
    port_bindings: dict[str, list[dict[str, str]]] = field(default_factory=dict)
    publish_all_ports: bool = False
    network_mode: str = ""
    privileged: bool = False
    readonly_rootfs: bool = False
    cap_add: list[str] = field(default_factory=list)
    cap_drop: list[str] = field(default_factory=list)
    dns: list[str] = field(default_factory=list)
    dns_search: list[str] = field(default_factory=list)
    extra_hosts: list[str] = field(default_factory=list)
    pid_mode: str = ""
    ipc_mode: str = ""
    uts_mode: str = ""
    cgroup_parent: str = ""
    security_opt: list[str] = field(default_factory=list)
    devices: list[dict[str, str]] = field(default_factory=list)
    group_add: list[str] = field(default_factory=list)
    restart_policy: dict[str, Any] | None = None
    log_config: dict[str, Any] | None = None
    ulimits: list[dict[str, Any]] = field(default_factory=list)
    tmpfs: dict[str, str] = field(default_factory=dict)
    sysctls: dict[str, str] = field(default_factory=dict)
    storage_opt: dict[str, str] = field(default_factory=dict)
    memory: int = 0
    memory_swap: int = 0
    memory_reservation: int = 0
    cpu_shares: int = 0
    cpuset_cpus: str = ""
    cpu_quota: int = 0
    cpu_period: int = 0
    pids_limit: int = 0
    blkio_weight: int = 0
    shm_size: int = 0
    oom_kill_disable: bool = False

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "PublishAllPorts": self.publish_all_ports,
            "Privileged": self.privileged,
            "ReadonlyRootfs": self.readonly_rootfs,
        }
        optional = {
            "Binds": list(self.binds),
            "VolumesFrom": list(self.volumes_from),
            "PortBindings": {k: [dict(b) for b in v] for k, v in self.port_bindings.items()},
            "NetworkMode": self.network_mode,
            "CapAdd": list(self.cap_add),
            "CapDrop": list(self.cap_drop),
            "Dns": list(self.dns),
            "DnsSearch": list(self.dns_search),
            "ExtraHosts": list(self.extra_hosts),
            "PidMode": self.pid_mode,
            "IpcMode": self.ipc_mode,
            "UTSMode": self.uts_mode,
            "CgroupParent": self.cgroup_parent,
            "SecurityOpt": list(self.security_opt),
            "Devices": [dict(d) for d in self.devices],
            "GroupAdd": list(self.group_add),
            "RestartPolicy": self.restart_policy,
            "LogConfig": self.log_config,
            "Ulimits": [dict(u) for u in self.ulimits],
            "Tmpfs": dict(self.tmpfs),
            "Sysctls": dict(self.sysctls),
            "StorageOpt": dict(self.storage_opt),
            "Memory": self.memory,
            "MemorySwap": self.memory_swap,
            "MemoryReservation": self.memory_reservation,
            "CpuShares": self.cpu_shares,
            "CpusetCpus": self.cpuset_cpus,
            "CpuQuota": self.cpu_quota,
            "CpuPeriod": self.cpu_period,
            "PidsLimit": self.pids_limit,
            "BlkioWeight": self.blkio_weight,
            "ShmSize": self.shm_size,
            "OomKillDisable": self.oom_kill_disable,
        }
        body.update({k: v for k, v in optional.items() if v})
        return body


@dataclass
class DockerContainerSpec:
    """Translated container: name plus config / host config pair."""
    name: str
    config: ContainerConfig
    host_config: HostConfig

    def to_api(self) -> dict[str, Any]:
        """Request body for ``POST /containers/create``."""
        body = self.config.to_api()
        body["HostConfig"] = self.host_config.to_api()
        return body


def translate(
    spec: ContainerSpec,
    layout: VolumeLayout,
    network_kind: str = "",
    ids_map: Mapping[str, str] | None = None,
    api_version: str | None = None,
    host_env: Mapping[str, str] | None = None,
) -> DockerContainerSpec:
    """Translate a container specification into Docker configuration.

    Args:
        spec: Desired container
        layout: Volume binds / volumes-from from the volume provisioner,
            including the managed volume bind mounts
        network_kind: Network kind of the container's primary network
        ids_map: Logical container reference -> engine id
        api_version: Engine API version; gates version-specific fields
        host_env: Agent environment for proxy propagation (default os.environ)

    Raises:
        TranslationError: The spec's identity is malformed
    """
    name = container_name(spec)
    ids_map = ids_map or {}
    host_env = os.environ if host_env is None else host_env

    config = ContainerConfig(image=normalize_image(spec.image))
    host_config = HostConfig(
        privileged=spec.privileged,
        readonly_rootfs=spec.read_only,
    )

    setup_labels(spec, config)
    setup_fields_host_config(spec, host_config)
    setup_fields_config(spec, config, api_version)
    setup_proxy_environment(spec, config, host_env)
    setup_dns_search(spec, host_config, network_kind)
    setup_hostname(spec, config)
    setup_ports(spec, config, host_config)
    setup_volumes(layout, config, host_config)
    setup_networking(spec, config, host_config, ids_map, network_kind)
    setup_device_options(spec, host_config)
    setup_compute_resources(spec, host_config)
    setup_health_config(spec, config)

    return DockerContainerSpec(name=name, config=config, host_config=host_config)


def setup_labels(spec: ContainerSpec, config: ContainerConfig) -> None:
    config.labels.update(spec.labels)
    config.labels[UUID_LABEL] = spec.uuid


def setup_fields_host_config(spec: ContainerSpec, host_config: HostConfig) -> None:
    host_config.cap_add.extend(spec.cap_add)
    host_config.cap_drop.extend(spec.cap_drop)
    host_config.dns.extend(spec.dns)
    host_config.extra_hosts.extend(spec.extra_hosts)
    host_config.pid_mode = spec.pid_mode
    host_config.ipc_mode = spec.ipc_mode
    host_config.uts_mode = spec.uts
    host_config.cgroup_parent = spec.cgroup_parent
    host_config.security_opt.extend(spec.security_opt)
    host_config.group_add.extend(spec.group_add)
    host_config.tmpfs.update(spec.tmpfs)
    host_config.sysctls.update(spec.sysctls)
    host_config.storage_opt.update(spec.storage_opt)

    if spec.restart_policy and spec.restart_policy.name:
        host_config.restart_policy = {
            "Name": spec.restart_policy.name,
            "MaximumRetryCount": spec.restart_policy.maximum_retry_count,
        }

    if spec.log_config and spec.log_config.driver:
        host_config.log_config = {
            "Type": spec.log_config.driver,
            "Config": dict(spec.log_config.config),
        }

    for ulimit in spec.ulimits:
        entry: dict[str, Any] = {"Name": ulimit.name}
        if ulimit.soft is not None:
            entry["Soft"] = ulimit.soft
        if ulimit.hard is not None:
            entry["Hard"] = ulimit.hard
        host_config.ulimits.append(entry)


def setup_fields_config(spec: ContainerSpec, config: ContainerConfig, api_version: str | None) -> None:
    """Copy process fields; stop timeout only where the engine supports it."""
    config.cmd = list(spec.command)
    config.entrypoint = list(spec.entry_point)
    config.env.extend(f"{k}={v}" for k, v in spec.environment.items())
    config.working_dir = spec.working_dir
    config.tty = spec.tty
    config.open_stdin = spec.stdin_open
    config.domainname = spec.domain_name
    config.stop_signal = spec.stop_signal
    config.user = spec.user

    if spec.stop_timeout and api_version and version_gte(api_version, STOP_TIMEOUT_MIN_API):
        config.stop_timeout = spec.stop_timeout


def setup_proxy_environment(
    spec: ContainerSpec, config: ContainerConfig, host_env: Mapping[str, str]
) -> None:
    # System containers talk to the outside through the agent's proxy
    if SYSTEM_LABEL not in spec.labels:
        return
    for var in HTTP_PROXY_VARS:
        value = host_env.get(var)
        if value and var not in spec.environment:
            config.env.append(f"{var}={value}")


def setup_dns_search(spec: ContainerSpec, host_config: HostConfig, network_kind: str) -> None:
    search = list(spec.dns_search)

    if network_kind == NETWORK_MANAGED:
        stack = spec.labels.get(STACK_NAME_LABEL, "")
        # Service label is "<stack>/<service>"
        service = spec.labels.get(SERVICE_NAME_LABEL, "").rsplit("/", 1)[-1]
        if stack and service:
            search.append(f"{service}.{stack}.{INTERNAL_DNS_DOMAIN}".lower())
        if stack:
            search.append(f"{stack}.{INTERNAL_DNS_DOMAIN}".lower())
        search.append(INTERNAL_DNS_DOMAIN)

    host_config.dns_search.extend(dict.fromkeys(search))


def setup_hostname(spec: ContainerSpec, config: ContainerConfig) -> None:
    config.hostname = spec.hostname


def setup_ports(spec: ContainerSpec, config: ContainerConfig, host_config: HostConfig) -> None:
    """Expose private ports and bind public ones, in declaration order."""
    for endpoint in spec.public_endpoints:
        if not endpoint.private_port:
            continue
        port = f"{endpoint.private_port}/{endpoint.protocol or 'tcp'}"
        config.exposed_ports[port] = {}
        if endpoint.public_port:
            host_config.port_bindings.setdefault(port, []).append({
                "HostIp": endpoint.bind_ip_address,
                "HostPort": str(endpoint.public_port),
            })


def setup_volumes(layout: VolumeLayout, config: ContainerConfig, host_config: HostConfig) -> None:
    host_config.binds.extend(layout.managed_binds)
    host_config.binds.extend(layout.binds)
    for target in layout.volume_targets:
        config.volumes[target] = {}
    host_config.volumes_from.extend(layout.volumes_from)


def setup_networking(
    spec: ContainerSpec,
    config: ContainerConfig,
    host_config: HostConfig,
    ids_map: Mapping[str, str],
    network_kind: str,
) -> None:
    if network_kind == NETWORK_CONTAINER:
        target = ids_map.get(spec.network_container_id, "")
        if not target:
            logger.warning(
                f"Network container {spec.network_container_id!r} for {spec.uuid} "
                "is not on this host, starting without network"
            )
            host_config.network_mode = NETWORK_NONE
            return
        host_config.network_mode = f"container:{target}"
        # The engine rejects these alongside a joined network namespace
        config.hostname = ""
        config.domainname = ""
        config.exposed_ports.clear()
        host_config.port_bindings.clear()
        host_config.dns.clear()
        host_config.dns_search.clear()
        host_config.extra_hosts.clear()
    elif network_kind == NETWORK_MANAGED:
        host_config.network_mode = NETWORK_BRIDGE
    elif network_kind:
        host_config.network_mode = network_kind


def setup_device_options(spec: ContainerSpec, host_config: HostConfig) -> None:
    if spec.devices:
        host_config.devices.extend(parse_devices(list(spec.devices)))


def setup_compute_resources(spec: ContainerSpec, host_config: HostConfig) -> None:
    host_config.memory = spec.memory
    host_config.memory_swap = spec.memory_swap
    host_config.memory_reservation = spec.memory_reservation
    host_config.cpu_shares = spec.cpu_shares
    host_config.cpuset_cpus = spec.cpu_set
    host_config.cpu_quota = spec.cpu_quota
    host_config.cpu_period = spec.cpu_period
    host_config.pids_limit = spec.pids_limit
    host_config.blkio_weight = spec.blkio_weight
    host_config.shm_size = spec.shm_size
    host_config.oom_kill_disable = spec.oom_kill_disable


def setup_health_config(spec: ContainerSpec, config: ContainerConfig) -> None:
    """Health check durations go to the engine in nanoseconds."""
    if not (spec.health_cmd or spec.health_interval or spec.health_timeout or spec.health_retries):
        return
    healthcheck: dict[str, Any] = {
        "Interval": spec.health_interval * NANOSECONDS,
        "Timeout": spec.health_timeout * NANOSECONDS,
        "Retries": spec.health_retries,
    }
    if spec.health_cmd:
        healthcheck["Test"] = list(spec.health_cmd)
    config.healthcheck = healthcheck
