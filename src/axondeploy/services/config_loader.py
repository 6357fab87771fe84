"""Configuration loader for axon-deploy."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from axondeploy import constants
from axondeploy.errors import ConfigError
from axondeploy.models import (
    DeployConfig,
    DeploymentSettings,
    DockerConfig,
    EnvironmentConfig,
    HealthCheckConfig,
    HostConfig,
    HostRole,
    NginxConfig,
    PortRange,
    ProductConfig,
    ProxySettings,
    RegistryConfig,
    SshSettings,
    SslConfig,
    StaticConfig,
)

_ENV_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "axon.config.yml"


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping.")
    return value


def _int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}.") from exc


def _float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number, got {value!r}.") from exc


def _bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "0", "off"):
        return False
    raise ConfigError(f"'{key}' must be true or false, got {value!r}.")


def _str_tuple(value: Any, key: str) -> tuple:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list.")
    return tuple(str(item) for item in value)


class ConfigLoader:
    """Loads ``axon.config.yml`` into a :class:`DeployConfig`."""

    SUPPORTED_KEYS = {
        "product",
        "servers",
        "registry",
        "docker",
        "health_check",
        "deployment",
        "nginx",
        "static",
        "ssh",
        "port_range",
        "environments",
    }

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def load(self, config_path: Optional[str]) -> DeployConfig:
        return self.build(self.load_raw(config_path))

    def load_raw(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            raise ConfigError(f"No configuration file given and no {DEFAULT_CONFIG_FILENAME} found.")

        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict):
            raise ConfigError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}")

        return self._expand(parsed)

    def _expand(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: self._expand(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._expand(item) for item in value]
        if isinstance(value, str):
            return _ENV_REFERENCE_RE.sub(self._lookup, value)
        return value

    def _lookup(self, match) -> str:
        name = match.group(1)
        if name not in self.environ:
            raise ConfigError(f"Environment variable '{name}' referenced in the config is not set.")
        return self.environ[name]

    def build(self, raw: Mapping[str, Any]) -> DeployConfig:
        product_data = _section(raw, "product")
        if not product_data.get("name"):
            raise ConfigError("'product.name' is required.")
        product = ProductConfig(
            name=str(product_data["name"]),
            type=str(product_data.get("type", "docker")),
        )
        if product.type not in ("docker", "static"):
            raise ConfigError(f"'product.type' must be docker or static, got '{product.type}'.")

        hosts = self._hosts(_section(raw, "servers"), product.type)
        environments = self._environments(raw)

        return DeployConfig(
            product=product,
            hosts=hosts,
            environments=environments,
            registry=self._registry(_section(raw, "registry")),
            docker=self._docker(_section(raw, "docker")),
            health_check=self._health_check(_section(raw, "health_check")),
            deployment=self._deployment(_section(raw, "deployment")),
            nginx=self._nginx(_section(raw, "nginx")),
            static=self._static(_section(raw, "static")),
            ssh=self._ssh(_section(raw, "ssh")),
            port_range=self._port_range(_section(raw, "port_range")),
        )

    def _hosts(self, servers: Dict[str, Any], product_type: str) -> Dict[HostRole, HostConfig]:
        hosts = {}
        for role in HostRole:
            data = servers.get(role.value)
            if data is None:
                continue
            if not isinstance(data, dict) or not data.get("host"):
                raise ConfigError(f"'servers.{role.value}.host' is required.")
            hosts[role] = HostConfig(
                host=str(data["host"]),
                user=str(data.get("user", "deploy")),
                ssh_key=data.get("ssh_key"),
                port=_int(data.get("port", 22), f"servers.{role.value}.port"),
                private_ip=data.get("private_ip"),
            )

        if HostRole.SYSTEM not in hosts:
            raise ConfigError("'servers.system' is required.")
        if product_type == "docker" and HostRole.APPLICATION not in hosts:
            raise ConfigError("'servers.application' is required for docker products.")
        return hosts

    def _environments(self, raw: Mapping[str, Any]) -> Dict[str, EnvironmentConfig]:
        data = _section(raw, "environments")
        if not data:
            raise ConfigError("At least one entry under 'environments' is required.")

        environments = {}
        for name, values in data.items():
            values = values or {}
            if not isinstance(values, dict):
                raise ConfigError(f"'environments.{name}' must be a mapping.")
            ssl = None
            ssl_data = values.get("ssl")
            if ssl_data:
                if not isinstance(ssl_data, dict) or not (
                    ssl_data.get("certificate") and ssl_data.get("certificate_key")
                ):
                    raise ConfigError(f"'environments.{name}.ssl' needs certificate and certificate_key.")
                ssl = SslConfig(str(ssl_data["certificate"]), str(ssl_data["certificate_key"]))
            environments[str(name)] = EnvironmentConfig(
                name=str(name),
                domain=str(values.get("domain") or constants.NGINX_DEFAULT_DOMAIN),
                env_path=values.get("env_path"),
                image_tag=values.get("image_tag"),
                ssl=ssl,
                custom_properties=str(values.get("custom_properties") or ""),
            )
        return environments

    def _registry(self, data: Dict[str, Any]) -> RegistryConfig:
        provider = data.get("provider")
        settings = data.get(provider) if provider else None
        if settings is not None and not isinstance(settings, dict):
            raise ConfigError(f"'registry.{provider}' must be a mapping.")
        return RegistryConfig(provider=provider, settings=dict(settings or {}))

    def _docker(self, data: Dict[str, Any]) -> DockerConfig:
        health = _section(data, "health_check")
        logging_options = _section(data, "logging")
        env_vars = _section(data, "env_vars")
        return DockerConfig(
            container_port=_int(data.get("container_port", constants.CONTAINER_PORT), "docker.container_port"),
            restart_policy=str(data.get("restart_policy", constants.RESTART_POLICY)),
            env_vars={str(key): str(value) for key, value in env_vars.items()},
            extra_hosts=_str_tuple(data.get("extra_hosts"), "docker.extra_hosts"),
            network_name=data.get("network_name"),
            network_alias=data.get("network_alias"),
            healthcheck_command=health.get("command"),
            healthcheck_enabled=_bool(health.get("enabled", True), "docker.health_check.enabled"),
            healthcheck_interval=str(health.get("interval", constants.HEALTH_INTERVAL)),
            healthcheck_timeout=str(health.get("timeout", constants.HEALTH_TIMEOUT)),
            healthcheck_retries=_int(health.get("retries", constants.HEALTH_RETRIES), "docker.health_check.retries"),
            healthcheck_start_period=str(health.get("start_period", constants.HEALTH_START_PERIOD)),
            log_driver=str(logging_options.get("driver", constants.LOG_DRIVER)),
            log_max_size=str(logging_options.get("max_size", constants.LOG_MAX_SIZE)),
            log_max_file=str(logging_options.get("max_file", constants.LOG_MAX_FILE)),
        )

    def _health_check(self, data: Dict[str, Any]) -> HealthCheckConfig:
        deadline = data.get("deadline_seconds")
        return HealthCheckConfig(
            endpoint=str(data.get("endpoint", "/api/health")),
            max_retries=_int(data.get("max_retries", constants.HEALTH_MAX_RETRIES), "health_check.max_retries"),
            retry_interval=_float(
                data.get("retry_interval", constants.HEALTH_RETRY_INTERVAL),
                "health_check.retry_interval",
            ),
            deadline_seconds=_float(deadline, "health_check.deadline_seconds") if deadline is not None else None,
        )

    def _deployment(self, data: Dict[str, Any]) -> DeploymentSettings:
        auto_rollback = data.get("enable_auto_rollback", data.get("auto_rollback", True))
        return DeploymentSettings(
            graceful_shutdown_timeout=_int(
                data.get("graceful_shutdown_timeout", constants.GRACEFUL_SHUTDOWN_TIMEOUT),
                "deployment.graceful_shutdown_timeout",
            ),
            auto_rollback=_bool(auto_rollback, "deployment.enable_auto_rollback"),
            lock=_bool(data.get("lock", True), "deployment.lock"),
        )

    def _nginx(self, data: Dict[str, Any]) -> NginxConfig:
        proxy = _section(data, "proxy")
        return NginxConfig(
            axon_dir=str(data.get("axon_dir", constants.NGINX_AXON_DIR)).rstrip("/"),
            config_path=str(data.get("config_path", constants.NGINX_CONFIG_PATH)),
            use_sudo=_bool(data.get("use_sudo", True), "nginx.use_sudo"),
            proxy=ProxySettings(
                timeout=str(proxy.get("timeout", constants.NGINX_DEFAULT_TIMEOUT)),
                buffer_size=str(proxy.get("buffer_size", constants.NGINX_DEFAULT_BUFFER_SIZE)),
                buffers=str(proxy.get("buffers", constants.NGINX_DEFAULT_BUFFERS)),
                busy_buffers_size=str(proxy.get("busy_buffers_size", constants.NGINX_DEFAULT_BUSY_BUFFERS_SIZE)),
            ),
            custom_properties=str(data.get("custom_properties") or ""),
        )

    def _static(self, data: Dict[str, Any]) -> StaticConfig:
        return StaticConfig(
            deploy_path=str(data.get("deploy_path", "/var/www")),
            keep_releases=_int(data.get("keep_releases", constants.STATIC_KEEP_RELEASES), "static.keep_releases"),
            deploy_user=str(data.get("deploy_user", constants.STATIC_DEPLOY_USER)),
            shared_dirs=_str_tuple(data.get("shared_dirs"), "static.shared_dirs"),
            required_files=_str_tuple(data.get("required_files", ["index.html"]), "static.required_files"),
            archive_glob=str(data.get("archive_glob", constants.STATIC_ARCHIVE_GLOB)),
        )

    def _ssh(self, data: Dict[str, Any]) -> SshSettings:
        multiplex = _bool(data.get("multiplex", True), "ssh.multiplex")
        if self.environ.get("AXON_SSH_MULTIPLEX") == "0":
            multiplex = False
        command_timeout = data.get("command_timeout", constants.SSH_COMMAND_TIMEOUT)
        return SshSettings(
            multiplex=multiplex,
            server_alive_interval=_int(
                data.get("server_alive_interval", constants.SSH_SERVER_ALIVE_INTERVAL),
                "ssh.server_alive_interval",
            ),
            server_alive_count_max=_int(
                data.get("server_alive_count_max", constants.SSH_SERVER_ALIVE_COUNT_MAX),
                "ssh.server_alive_count_max",
            ),
            connect_timeout=_int(data.get("connect_timeout", constants.SSH_CONNECT_TIMEOUT), "ssh.connect_timeout"),
            command_timeout=_float(command_timeout, "ssh.command_timeout") if command_timeout is not None else None,
        )

    def _port_range(self, data: Dict[str, Any]) -> PortRange:
        start = self.environ.get("AXON_PORT_RANGE_START", data.get("start", constants.PORT_RANGE_START))
        end = self.environ.get("AXON_PORT_RANGE_END", data.get("end", constants.PORT_RANGE_END))
        attempts = self.environ.get("AXON_PORT_MAX_ATTEMPTS", data.get("max_attempts", constants.PORT_MAX_ATTEMPTS))
        return PortRange(
            start=_int(start, "port_range.start"),
            end=_int(end, "port_range.end"),
            max_attempts=_int(attempts, "port_range.max_attempts"),
        )
