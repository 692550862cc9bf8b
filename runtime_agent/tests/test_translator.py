"""Tests for container spec translation.

These tests verify that:
1. Container names are derived from name and uuid only
2. Ports, labels and volumes land in the right Docker structures
3. Version-gated and unit-converted fields are handled
4. Network kinds map to the right network mode
5. Translation is deterministic
"""

import json

import pytest

from runtime_agent.errors import ErrorCategory, TranslationError
from runtime_agent.runtime.translator import (
    SYSTEM_LABEL,
    UUID_LABEL,
    ContainerConfig,
    HostConfig,
    VolumeLayout,
    container_name,
    normalize_image,
    translate,
)
from runtime_agent.schemas import LogConfig, PublicEndpoint, RestartPolicy, Ulimit

SPEC_UUID = "c1b2d3e4-1111-2222-3333-444455556666"


# --- Container names ---

def test_container_name_uses_name_and_uuid_prefix(make_spec):
    assert container_name(make_spec()) == "r-web-c1b2d3e4"


def test_container_name_falls_back_to_uuid(make_spec):
    """Names the engine would reject are replaced by the full uuid."""
    assert container_name(make_spec(name="my app")) == f"r-{SPEC_UUID}"
    assert container_name(make_spec(name="")) == f"r-{SPEC_UUID}"
    assert container_name(make_spec(name="-lead")) == f"r-{SPEC_UUID}"


def test_container_name_ignores_other_fields(make_spec):
    first = make_spec(image="nginx:1", command=["a"])
    second = make_spec(image="redis:7", environment={"X": "1"})

    assert container_name(first) == container_name(second)


def test_invalid_uuid_raises_translation_error(make_spec):
    with pytest.raises(TranslationError) as exc_info:
        translate(make_spec(uuid="not-a-uuid"), VolumeLayout())

    assert exc_info.value.category == ErrorCategory.TRANSLATION


def test_normalize_image_strips_scheme():
    assert normalize_image("docker:nginx:1.25") == "nginx:1.25"
    assert normalize_image("nginx:1.25") == "nginx:1.25"


# --- Labels and process fields ---

def test_uuid_label_overrides_spec_labels(make_spec):
    spec = make_spec(labels={UUID_LABEL: "forged", "tier": "web"})

    result = translate(spec, VolumeLayout())

    assert result.config.labels[UUID_LABEL] == SPEC_UUID
    assert result.config.labels["tier"] == "web"


def test_process_fields_copied(make_spec):
    spec = make_spec(
        image="docker:nginx:latest",
        command=["nginx", "-g", "daemon off;"],
        entry_point=["/entry.sh"],
        environment={"A": "1", "B": "2"},
        working_dir="/srv",
        user="www",
        tty=True,
    )

    result = translate(spec, VolumeLayout())

    assert result.name == "r-web-c1b2d3e4"
    assert result.config.image == "nginx:latest"
    assert result.config.cmd == ["nginx", "-g", "daemon off;"]
    assert result.config.entrypoint == ["/entry.sh"]
    assert result.config.env == ["A=1", "B=2"]
    assert result.config.working_dir == "/srv"
    assert result.config.user == "www"
    assert result.config.tty is True
    assert result.config.open_stdin is True


def test_stop_timeout_requires_api_version(make_spec):
    spec = make_spec(stop_timeout=10)

    assert translate(spec, VolumeLayout(), api_version="1.24").config.stop_timeout is None
    assert translate(spec, VolumeLayout(), api_version="1.25").config.stop_timeout == 10
    assert translate(spec, VolumeLayout(), api_version="1.41").config.stop_timeout == 10
    assert translate(spec, VolumeLayout()).config.stop_timeout is None


def test_health_check_durations_in_nanoseconds(make_spec):
    spec = make_spec(
        health_cmd=["CMD", "curl", "-f", "http://localhost"],
        health_interval=5,
        health_timeout=2,
        health_retries=3,
    )

    healthcheck = translate(spec, VolumeLayout()).config.healthcheck

    assert healthcheck == {
        "Test": ["CMD", "curl", "-f", "http://localhost"],
        "Interval": 5_000_000_000,
        "Timeout": 2_000_000_000,
        "Retries": 3,
    }


def test_no_health_check_when_unset(make_spec):
    assert translate(make_spec(), VolumeLayout()).config.healthcheck is None


def test_proxy_environment_only_for_system_containers(make_spec):
    host_env = {"HTTP_PROXY": "http://proxy:3128", "NO_PROXY": "localhost"}

    system = translate(
        make_spec(labels={SYSTEM_LABEL: "true"}, environment={"NO_PROXY": "svc"}),
        VolumeLayout(),
        host_env=host_env,
    )
    regular = translate(make_spec(), VolumeLayout(), host_env=host_env)

    assert "HTTP_PROXY=http://proxy:3128" in system.config.env
    # Explicit container values win
    assert "NO_PROXY=svc" in system.config.env
    assert "NO_PROXY=localhost" not in system.config.env
    assert regular.config.env == []


# --- Ports ---

def test_port_binding(make_spec):
    spec = make_spec(public_endpoints=[PublicEndpoint(private_port=8080, public_port=80, protocol="tcp")])

    result = translate(spec, VolumeLayout())

    assert result.config.exposed_ports == {"8080/tcp": {}}
    assert result.host_config.port_bindings == {"8080/tcp": [{"HostIp": "", "HostPort": "80"}]}


def test_private_only_port_is_exposed_without_binding(make_spec):
    spec = make_spec(public_endpoints=[PublicEndpoint(private_port=53, protocol="udp")])

    result = translate(spec, VolumeLayout())

    assert result.config.exposed_ports == {"53/udp": {}}
    assert result.host_config.port_bindings == {}


def test_zero_private_port_skipped(make_spec):
    spec = make_spec(public_endpoints=[PublicEndpoint(private_port=0, public_port=80)])

    result = translate(spec, VolumeLayout())

    assert result.config.exposed_ports == {}
    assert result.host_config.port_bindings == {}


def test_multiple_bindings_keep_declaration_order(make_spec):
    spec = make_spec(public_endpoints=[
        PublicEndpoint(private_port=80, public_port=8080, bind_ip_address="10.0.0.1"),
        PublicEndpoint(private_port=80, public_port=9090),
    ])

    bindings = translate(spec, VolumeLayout()).host_config.port_bindings["80/tcp"]

    assert bindings == [
        {"HostIp": "10.0.0.1", "HostPort": "8080"},
        {"HostIp": "", "HostPort": "9090"},
    ]


# --- Volumes ---

def test_volume_layout_applied(make_spec):
    layout = VolumeLayout(
        managed_binds=["/mnt/flex/db:/var/lib/mysql:rw"],
        binds=["/src:/dst:ro"],
        volume_targets=["/var/lib/mysql", "/dst", "/scratch"],
        volumes_from=["abc123"],
    )

    result = translate(make_spec(), layout)

    assert result.host_config.binds == ["/mnt/flex/db:/var/lib/mysql:rw", "/src:/dst:ro"]
    assert result.config.volumes == {"/var/lib/mysql": {}, "/dst": {}, "/scratch": {}}
    assert result.host_config.volumes_from == ["abc123"]


# --- Networking ---

def test_container_network_mode(make_spec):
    spec = make_spec(
        network_container_id="net-1",
        hostname="web",
        dns=["8.8.8.8"],
        public_endpoints=[PublicEndpoint(private_port=80, public_port=80)],
    )

    result = translate(spec, VolumeLayout(), network_kind="container", ids_map={"net-1": "abcdef"})

    assert result.host_config.network_mode == "container:abcdef"
    assert result.config.hostname == ""
    assert result.config.exposed_ports == {}
    assert result.host_config.port_bindings == {}
    assert result.host_config.dns == []


def test_container_network_unresolved_falls_back_to_none(make_spec):
    spec = make_spec(network_container_id="net-1")

    result = translate(spec, VolumeLayout(), network_kind="container", ids_map={})

    assert result.host_config.network_mode == "none"


def test_managed_network_uses_bridge_and_internal_dns_search(make_spec):
    spec = make_spec(
        dns_search=["example.com"],
        labels={
            "io.rancher.stack.name": "Shop",
            "io.rancher.stack_service.name": "Shop/Api",
        },
    )

    result = translate(spec, VolumeLayout(), network_kind="managed")

    assert result.host_config.network_mode == "bridge"
    assert result.host_config.dns_search == [
        "example.com",
        "api.shop.rancher.internal",
        "shop.rancher.internal",
        "rancher.internal",
    ]


@pytest.mark.parametrize("kind", ["host", "none", "bridge"])
def test_plain_network_kinds_pass_through(kind, make_spec):
    assert translate(make_spec(), VolumeLayout(), network_kind=kind).host_config.network_mode == kind


def test_no_network_kind_leaves_engine_default(make_spec):
    assert translate(make_spec(), VolumeLayout()).host_config.network_mode == ""


# --- Host options ---

def test_host_options(make_spec):
    spec = make_spec(
        privileged=True,
        cap_add=["NET_ADMIN"],
        devices=["/dev/fuse"],
        restart_policy=RestartPolicy(name="on-failure", maximum_retry_count=3),
        log_config=LogConfig(driver="json-file", config={"max-size": "10m"}),
        ulimits=[Ulimit(name="nofile", soft=1024, hard=2048)],
        memory=256 * 1024 * 1024,
        cpu_set="0,1",
    )

    host_config = translate(spec, VolumeLayout()).host_config

    assert host_config.privileged is True
    assert host_config.cap_add == ["NET_ADMIN"]
    assert host_config.devices == [
        {"PathOnHost": "/dev/fuse", "PathInContainer": "/dev/fuse", "CgroupPermissions": "rwm"}
    ]
    assert host_config.restart_policy == {"Name": "on-failure", "MaximumRetryCount": 3}
    assert host_config.log_config == {"Type": "json-file", "Config": {"max-size": "10m"}}
    assert host_config.ulimits == [{"Name": "nofile", "Soft": 1024, "Hard": 2048}]
    assert host_config.memory == 256 * 1024 * 1024
    assert host_config.cpuset_cpus == "0,1"


# --- API bodies ---

def test_empty_structures_have_maps():
    config = ContainerConfig()
    host_config = HostConfig()

    assert config.labels == {}
    assert config.exposed_ports == {}
    assert host_config.port_bindings == {}
    assert "PortBindings" not in host_config.to_api()
    assert config.to_api()["Labels"] == {}


def test_api_body_shape(make_spec):
    spec = make_spec(public_endpoints=[PublicEndpoint(private_port=8080, public_port=80)])

    body = translate(spec, VolumeLayout(binds=["/a:/b:rw"]), network_kind="host").to_api()

    assert body["Image"] == "nginx:latest"
    assert body["ExposedPorts"] == {"8080/tcp": {}}
    assert body["HostConfig"]["PortBindings"] == {"8080/tcp": [{"HostIp": "", "HostPort": "80"}]}
    assert body["HostConfig"]["Binds"] == ["/a:/b:rw"]
    assert body["HostConfig"]["NetworkMode"] == "host"


def test_translation_is_deterministic(make_spec):
    spec = make_spec(
        environment={"B": "2", "A": "1"},
        labels={"z": "1", "a": "2"},
        public_endpoints=[
            PublicEndpoint(private_port=443, public_port=8443),
            PublicEndpoint(private_port=80, public_port=8080),
        ],
        data_volumes=["/data"],
    )
    layout = VolumeLayout(binds=["/x:/y:rw"], volume_targets=["/data", "/y"])

    first = translate(spec, layout, network_kind="managed", api_version="1.41", host_env={})
    second = translate(spec, layout, network_kind="managed", api_version="1.41", host_env={})

    assert first == second
    assert json.dumps(first.to_api()) == json.dumps(second.to_api())
