"""Per-environment deploy lock held on the System Host."""

import os
import shlex
import socket
import time

from axondeploy.errors import DeployError, DeployLockError
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import HostRole, NginxConfig
from axondeploy.services.proxy_config import normalize_environment


class DeployLock:
    """``mkdir``-based mutual exclusion for one ``{product, environment}``.

    ``mkdir`` is atomic on the remote filesystem, so exactly one run wins.
    The directory holds an ``owner`` file naming the holder.
    """

    def __init__(self, gateway, nginx: NginxConfig, product: str, environment: str, logger, clock=time.time):
        self.gateway = gateway
        self.nginx = nginx
        self.environment = environment
        self.logger = logger
        self.clock = clock
        self.sudo = "sudo " if nginx.use_sudo else ""
        self.path = f"{nginx.locks_dir}/{product}-{normalize_environment(environment)}.lock"
        self.acquired = False

    def owner(self) -> str:
        user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
        return f"{user}@{socket.gethostname()} pid={os.getpid()} since={int(self.clock())}"

    def acquire(self):
        path = shlex.quote(self.path)
        owner_file = shlex.quote(f"{self.path}/owner")
        result = self.gateway.execute(
            HostRole.SYSTEM,
            [
                (f"{self.sudo}mkdir -p {shlex.quote(self.nginx.locks_dir)}", "locks_dir"),
                (
                    f"if {self.sudo}mkdir {path} 2>/dev/null; then "
                    f"printf '%s\\n' {shlex.quote(self.owner())} | {self.sudo}tee {owner_file} >/dev/null; "
                    "echo acquired; "
                    f"else cat {owner_file} 2>/dev/null || echo unknown; fi",
                    "lock",
                ),
            ],
        )
        answer = result.stdout("lock").strip()
        if answer == "acquired":
            self.acquired = True
            self.logger.debug("Acquired deploy lock %s", self.path)
            return
        raise DeployLockError(
            actionable_error(
                "deploy_locked",
                environment=self.environment,
                holder=answer or "unknown",
                path=self.path,
            )
        )

    def release(self):
        if not self.acquired:
            return
        try:
            result = self.gateway.execute(HostRole.SYSTEM, [(f"{self.sudo}rm -rf {shlex.quote(self.path)}", "unlock")])
        except DeployError as exc:
            self.logger.warning("Could not release deploy lock %s: %s", self.path, exc)
            self.acquired = False
            return
        if result.exit_code("unlock") != 0:
            self.logger.warning("Could not release deploy lock %s; remove it manually.", self.path)
        else:
            self.logger.debug("Released deploy lock %s", self.path)
        self.acquired = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.release()
        return False
