"""Remote execution gateway for axon-deploy.

One gateway is owned by a run. It keeps a multiplexed OpenSSH session per host
role, packs several shell commands into a single round trip and hands back a
typed record per command. Async batches run on a thread pool and are tracked
by explicit handles that must be waited on and released.
"""

import base64
import glob
import os
import secrets
import shlex
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from axondeploy.errors import DeployError, RemoteConnectionError, StaleSessionError, UnknownLabelError
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import BatchResult, CommandResult, HostConfig, HostRole, RemoteCommand, SshSettings
from axondeploy.services.command_runner import CommandRunner, encode_input

CommandSpec = Union[RemoteCommand, Tuple[str, str]]

TRANSPORT_FAILURE_CODE = 255

STALE_SESSION_PATTERNS = (
    "control socket",
    "controlsocket",
    "mux_client_request_session",
    "mux_client_hello_exchange",
    "master is dead",
)


def _marker(token: str, index: int) -> str:
    return f"__AXON_{token}_{index}__"


def write_file_command(content: str, remote_path: str) -> str:
    """Shell command writing ``content`` verbatim to ``remote_path``."""
    encoded = base64.b64encode(encode_input(content)).decode("ascii")
    return f"printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(remote_path)}"


def build_script(commands: Sequence[RemoteCommand], token: str, fail_fast: bool = False) -> str:
    lines = ["set -o pipefail"]
    for index, spec in enumerate(commands):
        marker = _marker(token, index)
        lines.append(f"printf '%s:START\\n' '{marker}'")
        lines.append("{")
        lines.append(spec.command)
        lines.append("} < /dev/null")
        lines.append("__axon_rc=$?")
        lines.append(f"printf '\\n%s:EXIT:%s\\n' '{marker}' \"$__axon_rc\"")
        if fail_fast:
            lines.append('[ "$__axon_rc" -eq 0 ] || exit "$__axon_rc"')
    return "\n".join(lines) + "\n"


def parse_batch_output(output: str, labels: Sequence[str], token: str) -> BatchResult:
    """Split the combined stream back into one record per label.

    Extraction walks the stream in order, so text a command prints can never
    be mistaken for a later command's markers. Commands that never ran (a
    fail-fast batch stopped early) get exit code 255 and empty output.
    """
    records: List[CommandResult] = []
    position = 0
    for index, label in enumerate(labels):
        marker = _marker(token, index)
        start_token = f"{marker}:START\n"
        start_at = output.find(start_token, position)
        if start_at < 0:
            records.append(CommandResult(label, "", TRANSPORT_FAILURE_CODE))
            continue

        body_start = start_at + len(start_token)
        end_token = f"\n{marker}:EXIT:"
        end_at = output.find(end_token, body_start)
        if end_at < 0:
            # The script died mid-command; keep what it printed.
            records.append(CommandResult(label, output[body_start:], TRANSPORT_FAILURE_CODE))
            position = len(output)
            continue

        code_start = end_at + len(end_token)
        code_end = output.find("\n", code_start)
        if code_end < 0:
            code_end = len(output)
        code_text = output[code_start:code_end].strip()
        exit_code = int(code_text) if code_text.isdigit() else TRANSPORT_FAILURE_CODE
        records.append(CommandResult(label, output[body_start:end_at], exit_code))
        position = code_end

    return BatchResult(records=tuple(records))


def interrupted_label(output: str, labels: Sequence[str], token: str) -> Optional[str]:
    """Label of the command that started but never reported its exit code."""
    position = 0
    for index, label in enumerate(labels):
        marker = _marker(token, index)
        start_at = output.find(f"{marker}:START\n", position)
        if start_at < 0:
            return None
        end_at = output.find(f"\n{marker}:EXIT:", start_at)
        if end_at < 0:
            return label
        position = end_at + 1
    return None


@dataclass
class AsyncHandle:
    """In-flight async batch. Valid for ``result`` only after ``wait``."""

    batch_id: str
    role: HostRole
    labels: Tuple[str, ...]
    future: Future = field(repr=False)
    waited: bool = False
    released: bool = False


class RemoteGateway:
    """Batched command execution over one reusable SSH session per host role."""

    def __init__(
        self,
        hosts: Mapping[HostRole, HostConfig],
        ssh_settings: SshSettings,
        logger,
        command_runner: Optional[CommandRunner] = None,
        max_workers: int = 4,
    ):
        self.hosts = dict(hosts)
        self.ssh_settings = ssh_settings
        self.logger = logger
        self.command_runner = command_runner or CommandRunner(
            logger=logger,
            default_timeout=ssh_settings.command_timeout,
        )
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="axon-batch")
        self._handles: Dict[str, AsyncHandle] = {}
        self._announced: Set[HostRole] = set()
        self._lock = threading.Lock()
        self._socket_dir: Optional[str] = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.close()
        return False

    # -- session handling -------------------------------------------------

    def _host(self, role: HostRole) -> HostConfig:
        if role not in self.hosts:
            raise DeployError(f"No host configured for role '{role.value}'.")
        return self.hosts[role]

    def control_path(self, role: HostRole) -> str:
        with self._lock:
            if self._socket_dir is None:
                self._socket_dir = tempfile.mkdtemp(prefix="axon-ssh-")
                os.chmod(self._socket_dir, 0o700)
            return os.path.join(self._socket_dir, f"{role.value}-%C")

    def ssh_command(self, role: HostRole) -> List[str]:
        host = self._host(role)
        settings = self.ssh_settings
        cmd = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={settings.connect_timeout}",
            "-o",
            f"ServerAliveInterval={settings.server_alive_interval}",
            "-o",
            f"ServerAliveCountMax={settings.server_alive_count_max}",
            "-p",
            str(host.port),
        ]
        if host.ssh_key:
            cmd += ["-i", os.path.expanduser(host.ssh_key)]
        if settings.multiplex:
            cmd += [
                "-o",
                "ControlMaster=auto",
                "-o",
                f"ControlPath={self.control_path(role)}",
                "-o",
                "ControlPersist=yes",
            ]
        cmd += [host.target, "bash", "-s"]
        return cmd

    def _announce(self, role: HostRole):
        with self._lock:
            if role in self._announced:
                return
            self._announced.add(role)
        host = self._host(role)
        if self.ssh_settings.multiplex:
            self.logger.info("Opening multiplexed %s session to %s", role.value, host.target)
        else:
            self.logger.info("Connecting to %s host %s", role.value, host.target)

    def _exit_master(self, role: HostRole):
        if not self.ssh_settings.multiplex or self._socket_dir is None:
            return
        host = self._host(role)
        self.command_runner.run(
            ["ssh", "-O", "exit", "-o", f"ControlPath={self.control_path(role)}", host.target],
            check=False,
            capture_output=True,
            timeout=self.ssh_settings.connect_timeout,
        )

    def reset_session(self, role: HostRole):
        """Close the control master for ``role`` and remove its socket."""
        try:
            self._exit_master(role)
        except DeployError as exc:
            self.logger.debug("Could not stop %s control master: %s", role.value, exc)
        if self._socket_dir is not None:
            for socket_path in glob.glob(os.path.join(self._socket_dir, f"{role.value}-*")):
                try:
                    os.remove(socket_path)
                except OSError as exc:
                    self.logger.debug("Could not remove control socket %s: %s", socket_path, exc)
        with self._lock:
            self._announced.discard(role)

    # -- batch execution --------------------------------------------------

    @staticmethod
    def _normalize(commands: Sequence[CommandSpec]) -> List[RemoteCommand]:
        specs = []
        seen = set()
        for item in commands:
            spec = item if isinstance(item, RemoteCommand) else RemoteCommand(item[0], item[1])
            if spec.label in seen:
                raise ValueError(f"Duplicate batch label: {spec.label}")
            seen.add(spec.label)
            specs.append(spec)
        return specs

    def _ensure_open(self):
        if self._closed:
            raise DeployError("Remote gateway is closed.")

    def _run_batch(self, role: HostRole, specs: List[RemoteCommand], fail_fast: bool) -> BatchResult:
        host = self._host(role)
        token = secrets.token_hex(8)
        script = build_script(specs, token, fail_fast=fail_fast)
        for spec in specs:
            self.logger.debug(
                "[%s] %s: %s",
                role.value,
                spec.label,
                "<redacted>" if spec.sensitive else spec.command,
            )

        self._announce(role)
        try:
            completed = self.command_runner.run(
                self.ssh_command(role),
                check=False,
                capture_output=True,
                input=script,
            )
        except DeployError as exc:
            raise RemoteConnectionError(f"{role.value} host {host.target}: {exc}") from exc

        stdout = completed.stdout or ""
        stderr = (completed.stderr or "").strip()
        if stderr:
            self.logger.debug("[%s] stderr: %s", role.value, stderr)

        labels = [spec.label for spec in specs]
        if completed.returncode == TRANSPORT_FAILURE_CODE:
            first_start = f"{_marker(token, 0)}:START\n"
            if first_start not in stdout:
                lowered = stderr.lower()
                if any(pattern in lowered for pattern in STALE_SESSION_PATTERNS):
                    raise StaleSessionError(stderr)
                raise RemoteConnectionError(self._connection_message("connection_failed", role, stderr))

            # Not retried: the cut-off command may already have run.
            cut_off = interrupted_label(stdout, labels, token)
            if cut_off is not None:
                raise RemoteConnectionError(
                    self._connection_message("connection_lost", role, stderr, label=cut_off)
                )

        return parse_batch_output(stdout, labels, token)

    def _connection_message(self, code: str, role: HostRole, stderr: str, **kwargs) -> str:
        host = self._host(role)
        message = actionable_error(
            code,
            role=role.value,
            target=host.target,
            ssh_key=host.ssh_key or "~/.ssh/id_rsa",
            **kwargs,
        )
        if stderr:
            message = f"{message}\n{stderr}"
        return message

    def _run_with_recovery(self, role: HostRole, specs: List[RemoteCommand], fail_fast: bool) -> BatchResult:
        try:
            return self._run_batch(role, specs, fail_fast)
        except StaleSessionError as exc:
            self.logger.warning("Stale %s session detected, reconnecting: %s", role.value, exc)
            self.reset_session(role)

        try:
            return self._run_batch(role, specs, fail_fast)
        except StaleSessionError as exc:
            host = self._host(role)
            raise RemoteConnectionError(
                actionable_error("session_unrecoverable", role=role.value, target=host.target)
            ) from exc

    def execute(self, role: HostRole, commands: Sequence[CommandSpec], fail_fast: bool = False) -> BatchResult:
        self._ensure_open()
        specs = self._normalize(commands)
        if not specs:
            return BatchResult(records=())
        return self._run_with_recovery(role, specs, fail_fast)

    def execute_async(
        self,
        role: HostRole,
        commands: Sequence[CommandSpec],
        fail_fast: bool = False,
    ) -> AsyncHandle:
        self._ensure_open()
        specs = self._normalize(commands)
        batch_id = uuid.uuid4().hex[:8]
        future = self._executor.submit(self._run_with_recovery, role, specs, fail_fast)
        handle = AsyncHandle(
            batch_id=batch_id,
            role=role,
            labels=tuple(spec.label for spec in specs),
            future=future,
        )
        with self._lock:
            self._handles[batch_id] = handle
        self.logger.debug("Started async batch %s on %s (%s commands)", batch_id, role.value, len(specs))
        return handle

    @staticmethod
    def _check_live(handle: AsyncHandle):
        if handle.released:
            raise DeployError(f"Async batch {handle.batch_id} was already released.")

    def wait(self, *handles: AsyncHandle, timeout: Optional[float] = None) -> bool:
        """Block until the handles finish.

        Returns False when any batch raised or any of its commands exited
        non-zero; the cause stays available through ``batch``/``result``.
        """
        for handle in handles:
            self._check_live(handle)

        done, _ = wait_futures([handle.future for handle in handles], timeout=timeout)
        ok = True
        for handle in handles:
            if handle.future not in done:
                self.logger.warning(
                    "Async batch %s on %s is still running after %ss.",
                    handle.batch_id,
                    handle.role.value,
                    timeout,
                )
                ok = False
                continue

            handle.waited = True
            error = handle.future.exception()
            if error is not None:
                self.logger.warning("Async batch %s on %s failed: %s", handle.batch_id, handle.role.value, error)
                ok = False
                continue

            failed = [record.label for record in handle.future.result().records if not record.ok]
            if failed:
                self.logger.debug("Async batch %s had failing commands: %s", handle.batch_id, ", ".join(failed))
                ok = False
        return ok

    def batch(self, handle: AsyncHandle) -> BatchResult:
        """Full result of a waited handle; re-raises the batch's own error."""
        self._check_live(handle)
        if not handle.waited:
            raise DeployError(f"Async batch {handle.batch_id} has not been waited on.")
        return handle.future.result()

    def result(self, handle: AsyncHandle, label: str) -> CommandResult:
        self._check_live(handle)
        if label not in handle.labels:
            raise UnknownLabelError(f"Label '{label}' is not part of async batch {handle.batch_id}.")
        return self.batch(handle).get(label)

    def exit_code(self, handle: AsyncHandle, label: str) -> int:
        return self.result(handle, label).exit_code

    def release(self, *handles: AsyncHandle):
        for handle in handles:
            if handle.released:
                continue
            handle.future.cancel()
            handle.released = True
            with self._lock:
                self._handles.pop(handle.batch_id, None)

    def close(self):
        """Release leftover handles, stop control masters and drop sockets."""
        if self._closed:
            return
        self._closed = True

        with self._lock:
            leftovers = [handle for handle in self._handles.values() if not handle.released]
        for handle in leftovers:
            self.logger.warning(
                "Async batch %s on %s was never released; releasing it at shutdown.",
                handle.batch_id,
                handle.role.value,
            )
            self.release(handle)

        self._executor.shutdown(wait=True)

        with self._lock:
            roles = list(self._announced)
        for role in roles:
            try:
                self._exit_master(role)
            except DeployError as exc:
                self.logger.debug("Could not stop %s control master: %s", role.value, exc)

        if self._socket_dir is not None:
            shutil.rmtree(self._socket_dir, ignore_errors=True)
            self._socket_dir = None
