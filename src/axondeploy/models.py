"""Shared domain models for axon-deploy."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from . import constants
from .errors import ConfigError, UnknownLabelError


class HostRole(str, Enum):
    SYSTEM = "system"
    APPLICATION = "application"


class ContainerState(str, Enum):
    DETECTING = "detecting"
    ALLOCATING = "allocating"
    STARTING = "starting"
    HEALTH_POLLING = "health_polling"
    PUBLISHING_CONFIG = "publishing_config"
    CUTTING_OVER = "cutting_over"
    RECLAIMING_OLD = "reclaiming_old"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    FAILED = "failed"


class ReleaseState(str, Enum):
    LOCATING = "locating"
    MATERIALIZING = "materializing"
    LINKING = "linking"
    VALIDATING = "validating"
    SWAPPING_POINTER = "swapping_pointer"
    PUBLISHING_CONFIG = "publishing_config"
    PRUNING = "pruning"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class HostConfig:
    """Address and credentials of one host role."""

    host: str
    user: str = "deploy"
    ssh_key: Optional[str] = None
    port: int = 22
    private_ip: Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"


@dataclass(frozen=True)
class SshSettings:
    multiplex: bool = True
    server_alive_interval: int = constants.SSH_SERVER_ALIVE_INTERVAL
    server_alive_count_max: int = constants.SSH_SERVER_ALIVE_COUNT_MAX
    connect_timeout: int = constants.SSH_CONNECT_TIMEOUT
    command_timeout: Optional[float] = constants.SSH_COMMAND_TIMEOUT


@dataclass(frozen=True)
class PortRange:
    """Inclusive range the port allocator draws candidates from."""

    start: int = constants.PORT_RANGE_START
    end: int = constants.PORT_RANGE_END
    max_attempts: int = constants.PORT_MAX_ATTEMPTS

    def __post_init__(self):
        if not 1 <= self.start <= 65535 or not 1 <= self.end <= 65535:
            raise ConfigError(f"Port range [{self.start}, {self.end}] must stay within 1-65535.")
        if self.start > self.end:
            raise ConfigError(f"Port range start {self.start} is greater than end {self.end}.")
        if self.max_attempts < 1:
            raise ConfigError("Port allocation needs at least one attempt.")

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end


@dataclass(frozen=True)
class ProductConfig:
    name: str
    type: str = "docker"


@dataclass(frozen=True)
class RegistryConfig:
    """Provider name plus its provider-specific settings block."""

    provider: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.settings.get(key)
        return default if value in (None, "") else value


@dataclass(frozen=True)
class DockerConfig:
    container_port: int = constants.CONTAINER_PORT
    restart_policy: str = constants.RESTART_POLICY
    env_vars: Dict[str, str] = field(default_factory=dict)
    extra_hosts: Tuple[str, ...] = ()
    network_name: Optional[str] = None
    network_alias: Optional[str] = None
    healthcheck_command: Optional[str] = None
    healthcheck_enabled: bool = True
    healthcheck_interval: str = constants.HEALTH_INTERVAL
    healthcheck_timeout: str = constants.HEALTH_TIMEOUT
    healthcheck_retries: int = constants.HEALTH_RETRIES
    healthcheck_start_period: str = constants.HEALTH_START_PERIOD
    log_driver: str = constants.LOG_DRIVER
    log_max_size: str = constants.LOG_MAX_SIZE
    log_max_file: str = constants.LOG_MAX_FILE


@dataclass(frozen=True)
class HealthCheckConfig:
    endpoint: str = "/api/health"
    max_retries: int = constants.HEALTH_MAX_RETRIES
    retry_interval: float = constants.HEALTH_RETRY_INTERVAL
    deadline_seconds: Optional[float] = None


@dataclass(frozen=True)
class DeploymentSettings:
    graceful_shutdown_timeout: int = constants.GRACEFUL_SHUTDOWN_TIMEOUT
    auto_rollback: bool = True
    lock: bool = True


@dataclass(frozen=True)
class ProxySettings:
    timeout: str = constants.NGINX_DEFAULT_TIMEOUT
    buffer_size: str = constants.NGINX_DEFAULT_BUFFER_SIZE
    buffers: str = constants.NGINX_DEFAULT_BUFFERS
    busy_buffers_size: str = constants.NGINX_DEFAULT_BUSY_BUFFERS_SIZE


@dataclass(frozen=True)
class NginxConfig:
    axon_dir: str = constants.NGINX_AXON_DIR
    config_path: str = constants.NGINX_CONFIG_PATH
    use_sudo: bool = True
    proxy: ProxySettings = field(default_factory=ProxySettings)
    custom_properties: str = ""

    @property
    def upstreams_dir(self) -> str:
        return f"{self.axon_dir}/upstreams"

    @property
    def sites_dir(self) -> str:
        return f"{self.axon_dir}/sites"

    @property
    def locks_dir(self) -> str:
        return f"{self.axon_dir}/locks"


@dataclass(frozen=True)
class SslConfig:
    certificate: str
    certificate_key: str


@dataclass(frozen=True)
class StaticConfig:
    deploy_path: str = "/var/www"
    keep_releases: int = constants.STATIC_KEEP_RELEASES
    deploy_user: str = constants.STATIC_DEPLOY_USER
    shared_dirs: Tuple[str, ...] = ()
    required_files: Tuple[str, ...] = ("index.html",)
    archive_glob: str = constants.STATIC_ARCHIVE_GLOB


@dataclass(frozen=True)
class EnvironmentConfig:
    name: str
    domain: str = constants.NGINX_DEFAULT_DOMAIN
    env_path: Optional[str] = None
    image_tag: Optional[str] = None
    ssl: Optional[SslConfig] = None
    custom_properties: str = ""

    @property
    def slug(self) -> str:
        """Lower-cased name with spaces turned into hyphens."""
        return self.name.strip().lower().replace(" ", "-")


@dataclass(frozen=True)
class DeployConfig:
    """Resolved configuration for one axon-deploy run."""

    product: ProductConfig
    hosts: Dict[HostRole, HostConfig]
    environments: Dict[str, EnvironmentConfig]
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    nginx: NginxConfig = field(default_factory=NginxConfig)
    static: StaticConfig = field(default_factory=StaticConfig)
    ssh: SshSettings = field(default_factory=SshSettings)
    port_range: PortRange = field(default_factory=PortRange)

    def environment(self, name: str) -> EnvironmentConfig:
        if name not in self.environments:
            available = ", ".join(sorted(self.environments)) or "<none>"
            raise ConfigError(f"Unknown environment '{name}'. Configured environments: {available}")
        return self.environments[name]

    def host(self, role: HostRole) -> HostConfig:
        if role not in self.hosts:
            raise ConfigError(f"No '{role.value}' server configured under 'servers'.")
        return self.hosts[role]


@dataclass(frozen=True)
class RemoteCommand:
    command: str
    label: str
    sensitive: bool = False


@dataclass(frozen=True)
class CommandResult:
    label: str
    stdout: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class BatchResult:
    """Ordered per-command records of one batch job."""

    records: Tuple[CommandResult, ...]

    def get(self, label: str) -> CommandResult:
        for record in self.records:
            if record.label == label:
                return record
        raise UnknownLabelError(f"Label '{label}' is not part of this batch.")

    def stdout(self, label: str) -> str:
        return self.get(label).stdout

    def exit_code(self, label: str) -> int:
        return self.get(label).exit_code

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(record.label for record in self.records)

    @property
    def ok(self) -> bool:
        return all(record.ok for record in self.records)


@dataclass
class DeploymentOutcome:
    """What one orchestrator run produced."""

    environment: str
    kind: str
    instance: Optional[str] = None
    port: Optional[int] = None
    previous_instance: Optional[str] = None
    previous_port: Optional[int] = None
    states: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    reclamation: Any = None

    @property
    def state(self) -> Optional[str]:
        return self.states[-1] if self.states else None


@dataclass
class EnvironmentOutcome:
    environment: str
    status: str
    error: Optional[str] = None
    outcome: Optional[DeploymentOutcome] = None
    reclamation_ok: Optional[bool] = None
