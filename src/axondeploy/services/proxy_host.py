"""nginx operations on the System Host."""

import posixpath
import secrets
import shlex
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from axondeploy.errors import DeployError
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import BatchResult, HostRole, NginxConfig
from axondeploy.services.remote_gateway import write_file_command

Snapshot = Dict[str, Optional[str]]


class ProxyHostService:
    """Reads, publishes, restores, tests and reloads proxy documents."""

    def __init__(self, gateway, nginx: NginxConfig, logger, console):
        self.gateway = gateway
        self.nginx = nginx
        self.logger = logger
        self.console = console
        self.sudo = "sudo " if nginx.use_sudo else ""

    def _test_command(self) -> str:
        return f"{self.sudo}nginx -t 2>&1"

    def preflight(self):
        upstreams = shlex.quote(self.nginx.upstreams_dir)
        sites = shlex.quote(self.nginx.sites_dir)
        config_path = shlex.quote(self.nginx.config_path)
        upstream_include = shlex.quote(f"include {self.nginx.upstreams_dir}/*.conf")
        site_include = shlex.quote(f"include {self.nginx.sites_dir}/*.conf")

        self.console.print("[blue]Running nginx pre-flight checks on the System Host...[/blue]")
        result = self.gateway.execute(
            HostRole.SYSTEM,
            [
                ("command -v nginx >/dev/null 2>&1 && echo yes || echo no", "installed"),
                (
                    "(systemctl is-active --quiet nginx 2>/dev/null || pgrep -x nginx >/dev/null 2>&1) "
                    "&& echo yes || echo no",
                    "running",
                ),
                (f"[ -d {upstreams} ] && [ -d {sites} ] && echo yes || echo no", "dirs"),
                (self._test_command(), "config_test"),
                (
                    f"{self.sudo}grep -qF {upstream_include} {config_path} && "
                    f"{self.sudo}grep -qF {site_include} {config_path} && echo yes || echo no",
                    "includes",
                ),
            ],
        )

        if result.stdout("installed").strip() != "yes":
            raise DeployError(actionable_error("nginx_missing", sudo=self.sudo))
        if result.stdout("running").strip() != "yes":
            self.console.print("[yellow]Warning: nginx does not appear to be running.[/yellow]")
            self.logger.warning("nginx does not appear to be running on the System Host.")
        if result.stdout("dirs").strip() != "yes":
            raise DeployError(actionable_error("axon_dirs_missing", axon_dir=self.nginx.axon_dir))
        if result.exit_code("config_test") != 0:
            self.logger.error(result.stdout("config_test").strip())
            raise DeployError(actionable_error("nginx_invalid_before_deploy", sudo=self.sudo))
        if result.stdout("includes").strip() != "yes":
            raise DeployError(actionable_error("axon_includes_missing", axon_dir=self.nginx.axon_dir))
        self.console.print("[green]nginx pre-flight checks passed.[/green]")

    @staticmethod
    def snapshot_commands(paths: Sequence[str]) -> List[Tuple[str, str]]:
        commands = []
        for index, path in enumerate(paths):
            quoted = shlex.quote(path)
            commands.append((f"[ -f {quoted} ] && echo present || echo absent", f"snapshot_exists_{index}"))
            commands.append((f"cat {quoted} 2>/dev/null || true", f"snapshot_content_{index}"))
        return commands

    @staticmethod
    def parse_snapshot(result: BatchResult, paths: Sequence[str]) -> Snapshot:
        snapshot: Snapshot = {}
        for index, path in enumerate(paths):
            if result.stdout(f"snapshot_exists_{index}").strip() == "present":
                snapshot[path] = result.stdout(f"snapshot_content_{index}")
            else:
                snapshot[path] = None
        return snapshot

    def snapshot(self, paths: Sequence[str]) -> Snapshot:
        result = self.gateway.execute(HostRole.SYSTEM, self.snapshot_commands(paths))
        return self.parse_snapshot(result, paths)

    def _install_commands(self, documents: Mapping[str, Optional[str]]) -> List[Tuple[str, str]]:
        token = secrets.token_hex(4)
        commands = []
        for index, (path, content) in enumerate(documents.items()):
            quoted = shlex.quote(path)
            if content is None:
                commands.append((f"{self.sudo}rm -f {quoted}", f"remove_{index}"))
                continue
            staging = f"/tmp/axon-{token}-{posixpath.basename(path)}"
            commands.append((write_file_command(content, staging), f"stage_{index}"))
            commands.append(
                (
                    f"{self.sudo}mv -f {shlex.quote(staging)} {quoted} && {self.sudo}chmod 644 {quoted}",
                    f"install_{index}",
                )
            )
        return commands

    def publish(self, documents: Mapping[str, str]) -> Tuple[bool, str]:
        """Stage, move into place and test every document in one round trip.

        Does not reload; the caller decides the cutover instant.
        """
        dirs = " ".join(shlex.quote(path) for path in (self.nginx.upstreams_dir, self.nginx.sites_dir))
        commands = [(f"{self.sudo}mkdir -p {dirs}", "ensure_dirs")]
        commands += self._install_commands(documents)
        commands.append((self._test_command(), "config_test"))

        result = self.gateway.execute(HostRole.SYSTEM, commands, fail_fast=True)
        failed = [record.label for record in result.records if record.label != "config_test" and not record.ok]
        if failed:
            return False, f"Could not install proxy documents ({', '.join(failed)})."
        return result.exit_code("config_test") == 0, result.stdout("config_test")

    def restore(self, snapshot: Snapshot) -> bool:
        """Write previous contents back verbatim; delete files that did not exist."""
        if not snapshot:
            return True
        result = self.gateway.execute(HostRole.SYSTEM, self._install_commands(snapshot))
        if not result.ok:
            failed = ", ".join(record.label for record in result.records if not record.ok)
            self.logger.error("Restoring proxy documents failed: %s", failed)
        return result.ok

    def test(self) -> Tuple[bool, str]:
        result = self.gateway.execute(HostRole.SYSTEM, [(self._test_command(), "config_test")])
        return result.exit_code("config_test") == 0, result.stdout("config_test")

    def reload(self) -> Tuple[bool, str]:
        result = self.gateway.execute(HostRole.SYSTEM, [(f"{self.sudo}systemctl reload nginx 2>&1", "reload")])
        return result.exit_code("reload") == 0, result.stdout("reload")
