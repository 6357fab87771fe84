"""Docker command synthesis for the Application Host."""

import shlex
from typing import List, Optional

from axondeploy.models import DockerConfig, HealthCheckConfig

HEALTH_STATUS_FORMAT = "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"


class DockerRuntimeService:
    """Builds the docker commands the container orchestrator sends remotely."""

    def __init__(self, docker: DockerConfig, health_check: HealthCheckConfig, product: str, environment: str):
        self.docker = docker
        self.health_check = health_check
        self.product = product
        self.environment = environment

    def _expand(self, template: Optional[str]) -> Optional[str]:
        if not template:
            return None
        return template.replace("{product}", self.product).replace("{environment}", self.environment)

    @property
    def network_name(self) -> Optional[str]:
        return self._expand(self.docker.network_name)

    @property
    def network_alias(self) -> Optional[str]:
        return self._expand(self.docker.network_alias)

    def healthcheck_command(self) -> str:
        if self.docker.healthcheck_command:
            return self.docker.healthcheck_command
        return (
            "wget --quiet --tries=1 --spider "
            f"http://127.0.0.1:{self.docker.container_port}{self.health_check.endpoint} || exit 1"
        )

    def list_instances_command(self, prefix: str) -> str:
        return (
            "docker ps -a --format '{{.Names}}\t{{.Ports}}' "
            f"| grep {shlex.quote('^' + prefix)} || true"
        )

    def ensure_network_command(self) -> Optional[str]:
        network = self.network_name
        if not network:
            return None
        quoted = shlex.quote(network)
        return f"docker network inspect {quoted} >/dev/null 2>&1 || docker network create {quoted} >/dev/null"

    @staticmethod
    def remove_container_command(name: str) -> str:
        return f"docker rm -f {shlex.quote(name)} >/dev/null 2>&1 || true"

    def run_command(self, name: str, image: str, host_port: int, env_file: Optional[str] = None) -> str:
        docker = self.docker
        args: List[str] = [
            "docker",
            "run",
            "-d",
            "--name",
            name,
            "-p",
            f"{host_port}:{docker.container_port}",
            "--restart",
            docker.restart_policy,
        ]
        if env_file:
            args += ["--env-file", env_file]
        for key, value in docker.env_vars.items():
            args += ["-e", f"{key}={value}"]
        for extra_host in docker.extra_hosts:
            args += ["--add-host", extra_host]
        if docker.healthcheck_enabled:
            args += [
                "--health-cmd",
                self.healthcheck_command(),
                "--health-interval",
                docker.healthcheck_interval,
                "--health-timeout",
                docker.healthcheck_timeout,
                "--health-retries",
                str(docker.healthcheck_retries),
                "--health-start-period",
                docker.healthcheck_start_period,
            ]
        args += [
            "--log-driver",
            docker.log_driver,
            "--log-opt",
            f"max-size={docker.log_max_size}",
            "--log-opt",
            f"max-file={docker.log_max_file}",
        ]
        if self.network_name:
            args += ["--network", self.network_name]
            if self.network_alias:
                args += ["--network-alias", self.network_alias]
        args.append(image)
        return " ".join(shlex.quote(arg) for arg in args) + " 2>&1"

    @staticmethod
    def health_status_command(name: str) -> str:
        return f"docker inspect --format {shlex.quote(HEALTH_STATUS_FORMAT)} {shlex.quote(name)} 2>/dev/null"

    def disconnect_others_command(self, prefix: str, keep: str) -> Optional[str]:
        """Detach every other instance from the shared network."""
        network = self.network_name
        if not network:
            return None
        return (
            f"for c in $(docker ps --format '{{{{.Names}}}}' | grep {shlex.quote('^' + prefix)}); do "
            f'[ "$c" = {shlex.quote(keep)} ] && continue; '
            f'docker network disconnect {shlex.quote(network)} "$c" >/dev/null 2>&1 && echo "$c"; '
            "done; true"
        )

    @staticmethod
    def stop_and_remove_command(names: List[str], grace_seconds: int) -> str:
        quoted = " ".join(shlex.quote(name) for name in names)
        return (
            f"for c in {quoted}; do "
            f'docker stop --timeout {int(grace_seconds)} "$c" >/dev/null 2>&1; '
            'docker rm "$c" >/dev/null 2>&1 && echo "removed $c" || { echo "failed $c"; rc=1; }; '
            'done; [ "${rc:-0}" -eq 0 ]'
        )
