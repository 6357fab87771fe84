"""Zero-downtime container cutover."""

import contextlib
import posixpath
import shlex
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from axondeploy.errors import (
    BindConflictError,
    ConfigValidationError,
    CriticalRollbackFailure,
    DeployError,
    HealthCheckTimeoutError,
)
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import ContainerState, DeployConfig, DeploymentOutcome, EnvironmentConfig, HostRole
from axondeploy.services.deploy_lock import DeployLock
from axondeploy.services.docker_runtime import DockerRuntimeService
from axondeploy.services.port_allocator import PortAllocator
from axondeploy.services.proxy_config import (
    ProxyConfigSynthesizer,
    config_filename,
    instance_name,
    instance_prefix,
    parse_upstream_port,
    upstream_name,
)
from axondeploy.services.proxy_host import ProxyHostService, Snapshot
from axondeploy.services.registry_auth import RegistryAuthService

PORT_CONFLICT_PATTERNS = (
    "port is already allocated",
    "address already in use",
    "failed to bind",
    "bind for",
)


def is_port_conflict(output: str) -> bool:
    lowered = (output or "").lower()
    return any(pattern in lowered for pattern in PORT_CONFLICT_PATTERNS)


def parse_instances(text: str) -> List[Tuple[str, str]]:
    """``docker ps`` lines of ``name<TAB>ports`` as pairs."""
    instances = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        name, _, ports = line.partition("\t")
        instances.append((name.strip(), ports.strip()))
    return instances


@dataclass
class CutoverProgress:
    """What an in-flight deployment has changed so far."""

    snapshot: Optional[Snapshot] = None
    container: Optional[str] = None
    published: bool = False
    switched: bool = False


class ContainerDeployOrchestrator:
    """Drives one container deployment from detection to reclamation.

    The cutover instant is the successful proxy reload. Before it only the
    old instance is live; every failure up to that point leaves the proxy
    as it was (or, on a first deployment, with no documents at all).
    """

    def __init__(
        self,
        config: DeployConfig,
        gateway,
        logger,
        console,
        allocator: Optional[PortAllocator] = None,
        proxy: Optional[ProxyHostService] = None,
        synthesizer: Optional[ProxyConfigSynthesizer] = None,
        registry: Optional[RegistryAuthService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.gateway = gateway
        self.logger = logger
        self.console = console
        self.allocator = allocator or PortAllocator(gateway, config.port_range, logger)
        self.proxy = proxy or ProxyHostService(gateway, config.nginx, logger, console)
        self.synthesizer = synthesizer or ProxyConfigSynthesizer()
        self.registry = registry or RegistryAuthService(config.registry, config.product.name, logger)
        self.clock = clock

    def _transition(self, outcome: DeploymentOutcome, state: ContainerState, on_transition=None):
        outcome.states.append(state.value)
        self.logger.debug("[%s] -> %s", outcome.environment, state.value)
        if on_transition:
            on_transition(state.value)

    def deploy(self, environment: str, cancel_event=None, on_transition=None) -> DeploymentOutcome:
        env = self.config.environment(environment)
        outcome = DeploymentOutcome(environment=env.name, kind="docker")
        progress = CutoverProgress()

        lock = contextlib.nullcontext()
        if self.config.deployment.lock:
            lock = DeployLock(self.gateway, self.config.nginx, self.config.product.name, env.name, self.logger)
        with lock:
            try:
                self._deploy(env, outcome, progress, cancel_event, on_transition)
            except DeployError:
                self._transition(outcome, ContainerState.FAILED, on_transition)
                raise
            except KeyboardInterrupt:
                if cancel_event is not None:
                    cancel_event.set()
                self._abort(env, outcome, progress, on_transition)
                raise
        return outcome

    def _abort(self, env: EnvironmentConfig, outcome: DeploymentOutcome, progress: CutoverProgress, on_transition):
        """Undo an interrupted deployment before the interrupt propagates."""
        if progress.switched or progress.container is None:
            self._transition(outcome, ContainerState.FAILED, on_transition)
            return

        self.console.print(f"[yellow]Interrupted; rolling back {progress.container}...[/yellow]")
        self._transition(outcome, ContainerState.ROLLING_BACK, on_transition)
        try:
            if progress.published:
                restored = self.proxy.restore(progress.snapshot)
                test_ok, test_output = self.proxy.test()
                if restored and test_ok:
                    self.proxy.reload()
                else:
                    self.logger.error(test_output.strip())
                    self.console.print(
                        f"[bold red]{actionable_error('rollback_failed', environment=env.name)}[/bold red]"
                    )
            self._remove_container(progress.container)
        except DeployError as exc:
            self.logger.error("Rollback of interrupted deployment failed: %s", exc)
        self._transition(outcome, ContainerState.FAILED, on_transition)

    def _deploy(
        self,
        env: EnvironmentConfig,
        outcome: DeploymentOutcome,
        progress: CutoverProgress,
        cancel_event,
        on_transition,
    ):
        product = self.config.product.name
        docker = DockerRuntimeService(self.config.docker, self.config.health_check, product, env.slug)
        filename = config_filename(product, env.name)
        upstream_path = f"{self.config.nginx.upstreams_dir}/{filename}"
        site_path = f"{self.config.nginx.sites_dir}/{filename}"
        prefix = instance_prefix(product, env.name)

        self.proxy.preflight()

        self._transition(outcome, ContainerState.DETECTING, on_transition)
        snapshot, instances = self._detect(env, docker, prefix, [upstream_path, site_path])
        progress.snapshot = snapshot
        previous_port = parse_upstream_port(snapshot.get(upstream_path) or "")
        previous_instance = None
        if previous_port is not None:
            for name, ports in instances:
                if f":{previous_port}->" in ports:
                    previous_instance = name
                    break
        outcome.previous_port = previous_port
        outcome.previous_instance = previous_instance
        if previous_port is None:
            self.console.print("[yellow]No live deployment found; this is a first deployment.[/yellow]")
        else:
            self.console.print(
                f"[blue]Live deployment: {previous_instance or '<unknown container>'} on port {previous_port}[/blue]"
            )

        self._transition(outcome, ContainerState.ALLOCATING, on_transition)
        name = instance_name(product, env.name, int(self.clock()))
        port = self.allocator.lease(exclude_ports=[previous_port])
        outcome.instance = name
        self.console.print(f"[blue]New container {name} will listen on port {port}[/blue]")

        self._transition(outcome, ContainerState.STARTING, on_transition)
        image = self.registry.image_uri(env.image_tag or env.name)
        self._pull(image)
        progress.container = name
        port = self._start(docker, env, name, image, port, previous_port)
        outcome.port = port

        self._transition(outcome, ContainerState.HEALTH_POLLING, on_transition)
        healthy, status = self._poll_health(docker, name, cancel_event)
        if not healthy:
            if not self.config.deployment.auto_rollback:
                raise HealthCheckTimeoutError(actionable_error("health_left_running", container=name, status=status))
            self._transition(outcome, ContainerState.ROLLING_BACK, on_transition)
            self._remove_container(name)
            test_ok, test_output = self.proxy.test()
            if not test_ok:
                self.logger.error(test_output.strip())
                raise CriticalRollbackFailure(actionable_error("rollback_failed", environment=env.name))
            raise HealthCheckTimeoutError(actionable_error("health_rolled_back", container=name, status=status))

        self._transition(outcome, ContainerState.PUBLISHING_CONFIG, on_transition)
        app_host = self.config.host(HostRole.APPLICATION)
        backend = upstream_name(product, env.name)
        custom = "\n".join(part for part in (self.config.nginx.custom_properties, env.custom_properties) if part)
        documents = {
            upstream_path: self.synthesizer.render_upstream(backend, app_host.private_ip or app_host.host, port),
            site_path: self.synthesizer.render_proxy_site(
                env.domain,
                backend,
                self.config.nginx.proxy,
                ssl=env.ssl,
                custom_directives=custom,
            ),
        }
        progress.published = True
        published, output = self.proxy.publish(documents)
        if not published:
            self.logger.error(output.strip())
            self._transition(outcome, ContainerState.ROLLING_BACK, on_transition)
            self._rollback_config(env, snapshot, name, "config_rolled_back")
        reloaded, output = self.proxy.reload()
        if not reloaded:
            self.logger.error(output.strip())
            self._transition(outcome, ContainerState.ROLLING_BACK, on_transition)
            self._rollback_config(env, snapshot, name, "reload_failed")
        progress.switched = True
        self.console.print(f"[green]Traffic switched to {name} on port {port}.[/green]")

        self._transition(outcome, ContainerState.CUTTING_OVER, on_transition)
        disconnect = docker.disconnect_others_command(prefix, keep=name)
        if disconnect:
            result = self.gateway.execute(HostRole.APPLICATION, [(disconnect, "disconnect")])
            detached = [line for line in result.stdout("disconnect").splitlines() if line.strip()]
            if detached:
                self.logger.info("Detached from %s: %s", docker.network_name, ", ".join(detached))

        self._transition(outcome, ContainerState.RECLAIMING_OLD, on_transition)
        old = [instance for instance, _ in instances if instance != name]
        if old:
            grace = self.config.deployment.graceful_shutdown_timeout
            outcome.reclamation = self.gateway.execute_async(
                HostRole.APPLICATION,
                [(docker.stop_and_remove_command(old, grace), "reclaim")],
            )
            self.console.print(f"[dim]Stopping {len(old)} old container(s) in the background.[/dim]")

        self._transition(outcome, ContainerState.DONE, on_transition)

    def _detect(
        self,
        env: EnvironmentConfig,
        docker: DockerRuntimeService,
        prefix: str,
        paths: List[str],
    ) -> Tuple[Snapshot, List[Tuple[str, str]]]:
        """Read proxy state and Application Host state concurrently."""
        app_commands = [(docker.list_instances_command(prefix), "instances")]
        if env.env_path:
            env_path = shlex.quote(env.env_path)
            app_commands.append((f"mkdir -p {shlex.quote(posixpath.dirname(env.env_path) or '.')}", "deploy_dir"))
            app_commands.append((f"[ -f {env_path} ] && echo present || echo missing", "env_file"))

        system_handle = self.gateway.execute_async(HostRole.SYSTEM, self.proxy.snapshot_commands(paths))
        app_handle = self.gateway.execute_async(HostRole.APPLICATION, app_commands)
        try:
            ok = self.gateway.wait(system_handle, app_handle)
            system_result = self.gateway.batch(system_handle)
            app_result = self.gateway.batch(app_handle)
        finally:
            self.gateway.release(system_handle, app_handle)

        if not ok:
            failed = [
                record.label for record in system_result.records + app_result.records if not record.ok
            ]
            raise DeployError(f"Detection commands failed: {', '.join(failed)}")

        if env.env_path and app_result.stdout("env_file").strip() != "present":
            raise DeployError(actionable_error("env_file_missing", path=env.env_path))

        return self.proxy.parse_snapshot(system_result, paths), parse_instances(app_result.stdout("instances"))

    def _pull(self, image: str):
        self.console.print(f"[blue]Pulling {image}...[/blue]")
        commands = self.registry.login_commands() + [self.registry.pull_command(image)]
        result = self.gateway.execute(HostRole.APPLICATION, commands, fail_fast=True)
        if not result.ok:
            for record in result.records:
                if not record.ok and record.stdout.strip():
                    self.logger.error("%s: %s", record.label, record.stdout.strip())
            raise DeployError(actionable_error("image_pull_failed", image=image))

    def _start(
        self,
        docker: DockerRuntimeService,
        env: EnvironmentConfig,
        name: str,
        image: str,
        port: int,
        previous_port: Optional[int],
    ) -> int:
        network = docker.ensure_network_command()
        commands = [(network, "network")] if network else []
        commands += [
            (docker.remove_container_command(name), "remove_stale"),
            (docker.run_command(name, image, port, env.env_path), "run"),
        ]
        result = self.gateway.execute(HostRole.APPLICATION, commands)
        if result.exit_code("run") == 0:
            return port

        output = result.stdout("run")
        if is_port_conflict(output):
            self.console.print(f"[yellow]Port {port} was taken before the bind; retrying with a new lease.[/yellow]")
            self.logger.warning("Bind conflict on port %s: %s", port, output.strip())
            failed_port = port
            port = self.allocator.lease(exclude_ports=[previous_port, failed_port])
            result = self.gateway.execute(
                HostRole.APPLICATION,
                [
                    (docker.remove_container_command(name), "remove_stale"),
                    (docker.run_command(name, image, port, env.env_path), "run"),
                ],
            )
            if result.exit_code("run") == 0:
                return port
            output = result.stdout("run")
            if is_port_conflict(output):
                self._remove_container(name)
                raise BindConflictError(actionable_error("bind_conflict", container=name, port=str(port)))

        self.logger.error(output.strip())
        self._remove_container(name)
        raise DeployError(actionable_error("container_start_failed", container=name))

    def _poll_health(self, docker: DockerRuntimeService, name: str, cancel_event) -> Tuple[bool, str]:
        settings = self.config.health_check
        deadline = self.clock() + settings.deadline_seconds if settings.deadline_seconds else None
        status = "unknown"
        self.console.print(f"[yellow]Waiting for {name} to become healthy...[/yellow]")

        for attempt in range(1, settings.max_retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                return False, "cancelled"

            result = self.gateway.execute(HostRole.APPLICATION, [(docker.health_status_command(name), "health")])
            status = result.stdout("health").strip() or "unknown"
            if status == "healthy":
                self.console.print(f"[green]{name} is healthy.[/green]")
                return True, status
            if status == "none":
                self.console.print(
                    f"[yellow]Warning: {name} has no health check; continuing without verification.[/yellow]"
                )
                self.logger.warning("%s has no health check configured.", name)
                return True, status

            self.logger.debug("Health of %s is '%s' (%s/%s)", name, status, attempt, settings.max_retries)
            if deadline is not None and self.clock() >= deadline:
                break
            if attempt < settings.max_retries:
                if cancel_event is not None:
                    cancel_event.wait(settings.retry_interval)
                else:
                    time.sleep(settings.retry_interval)

        return False, status

    def _remove_container(self, name: str):
        try:
            self.gateway.execute(HostRole.APPLICATION, [(DockerRuntimeService.remove_container_command(name), "remove")])
        except DeployError as exc:
            self.logger.warning("Could not remove container %s: %s", name, exc)

    def _rollback_config(self, env: EnvironmentConfig, snapshot: Snapshot, name: str, reason: str):
        had_previous = any(content is not None for content in snapshot.values())
        restored = self.proxy.restore(snapshot)
        test_ok, test_output = self.proxy.test()
        if restored and test_ok and had_previous:
            reloaded, reload_output = self.proxy.reload()
            if not reloaded:
                self.logger.warning("nginx reload after rollback failed: %s", reload_output.strip())
        self._remove_container(name)

        if not restored or not test_ok:
            self.logger.error(test_output.strip())
            raise CriticalRollbackFailure(actionable_error("rollback_failed", environment=env.name))

        if had_previous:
            summary = "The previous proxy configuration was restored and the new container removed."
        else:
            summary = "The new proxy configuration files were removed along with the new container."
        sudo = "sudo " if self.config.nginx.use_sudo else ""
        raise ConfigValidationError(actionable_error(reason, environment=env.name, restored=summary, sudo=sudo))
