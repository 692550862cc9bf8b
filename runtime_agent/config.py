"""Agent configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Agent identity
    agent_id: str = ""  # Auto-generated if not set
    agent_host: str = "0.0.0.0"
    agent_port: int = 8002

    # Controller connection (progress updates are POSTed here)
    controller_url: str = "http://localhost:8000"
    progress_enabled: bool = False
    progress_timeout: float = 5.0

    # Docker settings
    docker_socket: str = "unix:///var/run/docker.sock"
    docker_client_timeout: int = 300  # Creates can be slow on first image extraction

    # Flex volume drivers for managed volumes
    # Drivers live at {flex_volume_plugin_dir}/{vendor}~{driver}/{driver}
    flex_volume_plugin_dir: str = "/usr/libexec/kubernetes/kubelet-plugins/volume/exec"
    flex_volume_vendor: str = "rancher"
    flex_volume_mount_root: str = "/var/lib/rancher/volumes"
    flex_volume_timeout: float = 120.0

    # Logging configuration
    log_format: str = "json"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "RUNTIME_AGENT_"


settings = Settings()
