"""Static site releases with an atomically swapped ``current`` pointer."""

import contextlib
import posixpath
import re
import secrets
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from axondeploy import constants
from axondeploy.errors import ConfigValidationError, CriticalRollbackFailure, DeployError
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import DeployConfig, DeploymentOutcome, EnvironmentConfig, HostRole, ReleaseState
from axondeploy.services.deploy_lock import DeployLock
from axondeploy.services.proxy_config import ProxyConfigSynthesizer, config_filename
from axondeploy.services.proxy_host import ProxyHostService, Snapshot

_ARCHIVE_NAME_RE = re.compile(r"^static-build-(.+)\.tar\.gz$")


def select_releases_to_prune(names: Iterable[str], keep: int, current: Optional[str] = None) -> List[str]:
    """Releases to delete, oldest first.

    Names sort in timestamp order. The ``keep`` newest survive, and so does
    ``current`` wherever it falls.
    """
    ordered = sorted({name for name in names if name}, reverse=True)
    return sorted(name for name in ordered[max(keep, 1):] if name != current)


def release_name_from_archive(archive_path: str, fallback: str) -> str:
    match = _ARCHIVE_NAME_RE.match(posixpath.basename(archive_path))
    return match.group(1) if match else fallback


@dataclass
class ReleaseProgress:
    """What an in-flight static deployment has changed so far."""

    snapshot: Optional[Snapshot] = None
    releases_dir: Optional[str] = None
    current: Optional[str] = None
    previous_release: Optional[str] = None
    release_path: Optional[str] = None
    swapped: bool = False
    live: bool = False


class StaticDeployOrchestrator:
    """Materializes a release on the System Host and points traffic at it."""

    def __init__(
        self,
        config: DeployConfig,
        gateway,
        logger,
        console,
        proxy: Optional[ProxyHostService] = None,
        synthesizer: Optional[ProxyConfigSynthesizer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.gateway = gateway
        self.logger = logger
        self.console = console
        self.proxy = proxy or ProxyHostService(gateway, config.nginx, logger, console)
        self.synthesizer = synthesizer or ProxyConfigSynthesizer()
        self.clock = clock
        self.sudo = "sudo " if config.nginx.use_sudo else ""

    def _transition(self, outcome: DeploymentOutcome, state: ReleaseState, on_transition=None):
        outcome.states.append(state.value)
        self.logger.debug("[%s] -> %s", outcome.environment, state.value)
        if on_transition:
            on_transition(state.value)

    def deploy(self, environment: str, cancel_event=None, on_transition=None) -> DeploymentOutcome:
        env = self.config.environment(environment)
        outcome = DeploymentOutcome(environment=env.name, kind="static")
        progress = ReleaseProgress()

        lock = contextlib.nullcontext()
        if self.config.deployment.lock:
            lock = DeployLock(self.gateway, self.config.nginx, self.config.product.name, env.name, self.logger)
        with lock:
            try:
                self._deploy(env, outcome, progress, on_transition)
            except DeployError:
                self._transition(outcome, ReleaseState.FAILED, on_transition)
                raise
            except KeyboardInterrupt:
                if cancel_event is not None:
                    cancel_event.set()
                self._abort(env, outcome, progress, on_transition)
                raise
        return outcome

    def _abort(self, env: EnvironmentConfig, outcome: DeploymentOutcome, progress: ReleaseProgress, on_transition):
        """Undo an interrupted deployment before the interrupt propagates."""
        if progress.live or progress.release_path is None:
            self._transition(outcome, ReleaseState.FAILED, on_transition)
            return

        self.console.print(f"[yellow]Interrupted; rolling back {posixpath.basename(progress.release_path)}...[/yellow]")
        self._transition(outcome, ReleaseState.ROLLING_BACK, on_transition)
        try:
            if not progress.swapped:
                self._discard_release(progress.release_path)
            elif not self._undo(progress.snapshot, progress.releases_dir, progress.previous_release, progress.current):
                self.console.print(
                    f"[bold red]{actionable_error('rollback_failed', environment=env.name)}[/bold red]"
                )
        except DeployError as exc:
            self.logger.error("Rollback of interrupted deployment failed: %s", exc)
        self._transition(outcome, ReleaseState.FAILED, on_transition)

    def _run(self, commands, fail_fast: bool = False):
        return self.gateway.execute(HostRole.SYSTEM, commands, fail_fast=fail_fast)

    def _swap_command(self, target: str, current: str) -> str:
        staging = f"{current}.tmp.{secrets.token_hex(4)}"
        return (
            f"{self.sudo}ln -sfn {shlex.quote(target)} {shlex.quote(staging)} && "
            f"{self.sudo}mv -Tf {shlex.quote(staging)} {shlex.quote(current)} || "
            f"{{ {self.sudo}rm -f {shlex.quote(staging)}; false; }}"
        )

    def _deploy(self, env: EnvironmentConfig, outcome: DeploymentOutcome, progress: ReleaseProgress, on_transition):
        static = self.config.static
        env_root = f"{static.deploy_path.rstrip('/')}/{env.slug}"
        releases_dir = f"{env_root}/releases"
        shared_dir = f"{env_root}/shared"
        current = f"{env_root}/current"
        site_path = f"{self.config.nginx.sites_dir}/{config_filename(self.config.product.name, env.name)}"

        self.proxy.preflight()

        self._transition(outcome, ReleaseState.LOCATING, on_transition)
        located = self._run(
            [
                (f"ls -t {static.archive_glob} 2>/dev/null | head -1", "archive"),
                (f"readlink {shlex.quote(current)} 2>/dev/null || true", "current"),
            ]
            + self.proxy.snapshot_commands([site_path])
        )
        archive = located.stdout("archive").strip()
        if not archive:
            raise DeployError(
                actionable_error("archive_missing", pattern=static.archive_glob, environment=env.name)
            )
        snapshot = self.proxy.parse_snapshot(located, [site_path])
        current_target = located.stdout("current").strip()
        previous_release = posixpath.basename(current_target.rstrip("/")) if current_target else None
        fallback = time.strftime(constants.RELEASE_NAME_FORMAT, time.gmtime(self.clock()))
        release = release_name_from_archive(archive, fallback)
        release_path = f"{releases_dir}/{release}"
        outcome.instance = release
        outcome.previous_instance = previous_release
        progress.snapshot = snapshot
        progress.releases_dir = releases_dir
        progress.current = current
        progress.previous_release = previous_release
        self.console.print(f"[blue]Deploying release {release} from {archive}[/blue]")

        self._transition(outcome, ReleaseState.MATERIALIZING, on_transition)
        if release == previous_release:
            raise DeployError(actionable_error("release_live", release=release, environment=env.name))
        quoted_release = shlex.quote(release_path)
        progress.release_path = release_path
        result = self._run(
            [
                (f"{self.sudo}rm -rf {quoted_release} && {self.sudo}mkdir -p {quoted_release}", "prepare"),
                (f"{self.sudo}tar -xzf {shlex.quote(archive)} -C {quoted_release} 2>&1", "extract"),
            ],
            fail_fast=True,
        )
        if not result.ok:
            self.logger.error(result.stdout("extract").strip())
            self._discard_release(release_path)
            raise DeployError(f"Could not materialize release {release} from {archive}.")

        self._transition(outcome, ReleaseState.LINKING, on_transition)
        commands = []
        for index, shared_path in enumerate(static.shared_dirs):
            shared_target = shlex.quote(f"{shared_dir}/{shared_path}")
            link = shlex.quote(f"{release_path}/{shared_path}")
            link_parent = shlex.quote(posixpath.dirname(f"{release_path}/{shared_path}"))
            commands.append(
                (
                    f"{self.sudo}mkdir -p {shared_target} {link_parent} && "
                    f"{self.sudo}rm -rf {link} && {self.sudo}ln -s {shared_target} {link}",
                    f"link_{index}",
                )
            )
        commands.append(
            (
                f"{self.sudo}chown -R {shlex.quote(static.deploy_user)} {quoted_release} && "
                f"{self.sudo}chmod -R 755 {quoted_release}",
                "permissions",
            )
        )
        result = self._run(commands, fail_fast=True)
        failed_links = [record.label for record in result.records if record.label != "permissions" and not record.ok]
        if failed_links:
            self._discard_release(release_path)
            raise DeployError(f"Could not link shared paths into release {release}.")
        if result.exit_code("permissions") != 0:
            outcome.warnings.append("ownership")
            self.console.print("[yellow]Warning: could not fix ownership/permissions on the release.[/yellow]")
            self.logger.warning("Ownership fix-up failed for %s", release_path)

        self._transition(outcome, ReleaseState.VALIDATING, on_transition)
        if static.required_files:
            checks = [
                (f"[ -f {shlex.quote(f'{release_path}/{name}')} ] && echo ok || echo missing", f"required_{index}")
                for index, name in enumerate(static.required_files)
            ]
            result = self._run(checks)
            missing = [
                name
                for index, name in enumerate(static.required_files)
                if result.stdout(f"required_{index}").strip() != "ok"
            ]
            if missing:
                self._discard_release(release_path)
                raise DeployError(
                    actionable_error("required_files_missing", release=release, files=", ".join(missing))
                )

        self._transition(outcome, ReleaseState.SWAPPING_POINTER, on_transition)
        progress.swapped = True
        result = self._run([(self._swap_command(release_path, current), "swap")])
        if result.exit_code("swap") != 0:
            raise DeployError(actionable_error("pointer_swap_failed", release=release, path=current))
        self.console.print(f"[green]current -> {release}[/green]")

        self._transition(outcome, ReleaseState.PUBLISHING_CONFIG, on_transition)
        custom = "\n".join(part for part in (self.config.nginx.custom_properties, env.custom_properties) if part)
        document = self.synthesizer.render_static_site(env.domain, current, ssl=env.ssl, custom_directives=custom)
        published, output = self.proxy.publish({site_path: document})
        if not published:
            self.logger.error(output.strip())
            self._transition(outcome, ReleaseState.ROLLING_BACK, on_transition)
            self._rollback(env, snapshot, releases_dir, previous_release, current, "config_rolled_back")
        reloaded, output = self.proxy.reload()
        if not reloaded:
            self.logger.error(output.strip())
            self._transition(outcome, ReleaseState.ROLLING_BACK, on_transition)
            self._rollback(env, snapshot, releases_dir, previous_release, current, "reload_failed")
        progress.live = True
        self.console.print(f"[green]Release {release} is live.[/green]")

        self._transition(outcome, ReleaseState.PRUNING, on_transition)
        self._prune(releases_dir, release, static.keep_releases)

        self._transition(outcome, ReleaseState.DONE, on_transition)

    def _discard_release(self, release_path: str):
        try:
            self._run([(f"{self.sudo}rm -rf {shlex.quote(release_path)}", "discard")])
        except DeployError as exc:
            self.logger.warning("Could not remove unusable release %s: %s", release_path, exc)

    def _rollback(
        self,
        env: EnvironmentConfig,
        snapshot: Snapshot,
        releases_dir: str,
        previous_release: Optional[str],
        current: str,
        reason: str,
    ):
        if not self._undo(snapshot, releases_dir, previous_release, current):
            raise CriticalRollbackFailure(actionable_error("rollback_failed", environment=env.name))

        if previous_release:
            summary = f"current points at {previous_release} again and the previous site configuration was restored."
        else:
            summary = "The current pointer and the new site configuration were removed."
        raise ConfigValidationError(actionable_error(reason, environment=env.name, restored=summary, sudo=self.sudo))

    def _undo(self, snapshot: Snapshot, releases_dir: str, previous_release: Optional[str], current: str) -> bool:
        """Re-point ``current`` and restore the site document. False if either failed."""
        if previous_release:
            repoint = self._swap_command(f"{releases_dir}/{previous_release}", current)
        else:
            repoint = f"{self.sudo}rm -f {shlex.quote(current)}"
        result = self._run([(repoint, "repoint")])
        repointed = result.exit_code("repoint") == 0
        if not repointed:
            self.logger.error("Could not re-point %s during rollback.", current)

        restored = self.proxy.restore(snapshot)
        test_ok, test_output = self.proxy.test()
        had_site = any(content is not None for content in snapshot.values())
        if restored and test_ok and had_site:
            reloaded, reload_output = self.proxy.reload()
            if not reloaded:
                self.logger.warning("nginx reload after rollback failed: %s", reload_output.strip())

        if not (restored and test_ok):
            self.logger.error(test_output.strip())
        return repointed and restored and test_ok

    def _prune(self, releases_dir: str, current_release: str, keep: int):
        listing = self._run([(f"ls -1 {shlex.quote(releases_dir)} 2>/dev/null || true", "releases")])
        names = [line.strip() for line in listing.stdout("releases").splitlines() if line.strip()]
        doomed = select_releases_to_prune(names, keep, current=current_release)
        if not doomed:
            return

        result = self._run(
            [
                (f"{self.sudo}rm -rf {shlex.quote(f'{releases_dir}/{name}')}", f"prune_{index}")
                for index, name in enumerate(doomed)
            ]
        )
        for index, name in enumerate(doomed):
            if result.exit_code(f"prune_{index}") != 0:
                self.logger.warning("Could not prune release %s", name)
        self.console.print(f"[dim]Pruned {len(doomed)} old release(s).[/dim]")
