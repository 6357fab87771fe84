import logging
import threading
import uuid
from dataclasses import replace
from typing import List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .errors import CriticalRollbackFailure, DeployError
from .models import DeployConfig, DeploymentOutcome, EnvironmentOutcome
from .services.container_deploy import ContainerDeployOrchestrator
from .services.remote_gateway import RemoteGateway
from .services.report import RunReportService
from .services.static_deploy import StaticDeployOrchestrator

console = Console()
logger = logging.getLogger("axondeploy")


class AxonDeployer:
    """Runs one deployment per requested environment over a shared gateway."""

    def __init__(
        self,
        config: DeployConfig,
        environments: Sequence[str],
        report_file: Optional[str] = None,
        image_tag: Optional[str] = None,
        auto_rollback: Optional[bool] = None,
    ):
        if not environments:
            raise DeployError("No environment selected. Pass an environment name or --all.")
        for name in environments:
            config.environment(name)

        self.config = self._apply_overrides(config, image_tag, auto_rollback)
        self.environments = list(environments)
        self.image_tag = image_tag
        self.run_id = uuid.uuid4().hex[:10]
        self.report_service = RunReportService(report_file=report_file, logger=logger)
        self.outcomes: List[EnvironmentOutcome] = []
        self.cancel_event = threading.Event()

    @staticmethod
    def _apply_overrides(
        config: DeployConfig,
        image_tag: Optional[str],
        auto_rollback: Optional[bool],
    ) -> DeployConfig:
        if image_tag:
            environments = {
                name: replace(environment, image_tag=image_tag)
                for name, environment in config.environments.items()
            }
            config = replace(config, environments=environments)
        if auto_rollback is not None:
            config = replace(config, deployment=replace(config.deployment, auto_rollback=auto_rollback))
        return config

    def _build_gateway(self) -> RemoteGateway:
        return RemoteGateway(hosts=self.config.hosts, ssh_settings=self.config.ssh, logger=logger)

    def _build_orchestrator(self, gateway):
        if self.config.product.type == "static":
            return StaticDeployOrchestrator(self.config, gateway, logger, console)
        return ContainerDeployOrchestrator(self.config, gateway, logger, console)

    def _deploy_environment(self, orchestrator, name: str) -> bool:
        """Deploy one environment. Returns False when the run must stop."""
        console.print(f"[bold blue]Deploying {self.config.product.name} to {name}[/bold blue]")
        self.report_service.environment_started(name, {"kind": self.config.product.type})

        try:
            outcome = orchestrator.deploy(
                name,
                cancel_event=self.cancel_event,
                on_transition=lambda state: self.report_service.record_state(name, state),
            )
        except CriticalRollbackFailure as exc:
            self._record_failure(name, exc)
            console.print("[bold red]Manual intervention required. Remaining environments are skipped.[/bold red]")
            return False
        except DeployError as exc:
            self._record_failure(name, exc)
            return True
        except KeyboardInterrupt:
            self.outcomes.append(EnvironmentOutcome(environment=name, status="aborted"))
            self.report_service.environment_finished(name, "aborted", error="Operation cancelled by user.")
            raise

        self.outcomes.append(EnvironmentOutcome(environment=name, status="success", outcome=outcome))
        self.report_service.environment_finished(name, "success", details=self._details(outcome))
        console.print(f"[bold green]{name} deployed successfully.[/bold green]")
        return True

    def _record_failure(self, name: str, exc: DeployError):
        console.print(f"[bold red]Error:[/bold red] {exc}")
        logger.error(str(exc))
        self.outcomes.append(EnvironmentOutcome(environment=name, status="failed", error=str(exc)))
        self.report_service.environment_finished(name, "failed", error=str(exc))

    @staticmethod
    def _details(outcome: DeploymentOutcome):
        return {
            "instance": outcome.instance,
            "port": outcome.port,
            "previous_instance": outcome.previous_instance,
            "previous_port": outcome.previous_port,
            "warnings": list(outcome.warnings),
        }

    def _supervise_reclamation(self, gateway):
        for environment_outcome in self.outcomes:
            outcome = environment_outcome.outcome
            if outcome is None or outcome.reclamation is None:
                continue

            handle = outcome.reclamation
            ok = gateway.wait(handle)
            try:
                detail = gateway.result(handle, "reclaim").stdout.strip()
            except DeployError as exc:
                detail = str(exc)
            finally:
                gateway.release(handle)

            environment_outcome.reclamation_ok = ok
            self.report_service.record_reclamation(environment_outcome.environment, ok, detail)
            if ok:
                logger.info("Old containers of %s reclaimed: %s", environment_outcome.environment, detail)
            else:
                console.print(
                    f"[yellow]Warning: reclaiming old containers of {environment_outcome.environment} "
                    "did not complete cleanly.[/yellow]"
                )
                logger.warning("Reclamation for %s failed: %s", environment_outcome.environment, detail)

    def _print_summary(self):
        if len(self.outcomes) < 2:
            return
        table = Table(title="Deployment summary")
        table.add_column("Environment")
        table.add_column("Status")
        table.add_column("Instance")
        for environment_outcome in self.outcomes:
            color = {"success": "green", "failed": "red"}.get(environment_outcome.status, "yellow")
            instance = environment_outcome.outcome.instance if environment_outcome.outcome else "-"
            table.add_row(
                environment_outcome.environment,
                f"[{color}]{environment_outcome.status}[/{color}]",
                instance or "-",
            )
        console.print(table)

    def run(self) -> int:
        self.report_service.start_run(
            self.run_id,
            {
                "product": self.config.product.name,
                "kind": self.config.product.type,
                "environments": self.environments,
                "image_tag": self.image_tag,
            },
        )
        report_status = "failed"
        report_error = None
        gateway = self._build_gateway()

        try:
            orchestrator = self._build_orchestrator(gateway)
            halted = False
            for name in self.environments:
                if halted:
                    self.outcomes.append(EnvironmentOutcome(environment=name, status="skipped"))
                    self.report_service.environment_finished(name, "skipped")
                    continue
                halted = not self._deploy_environment(orchestrator, name)

            self._supervise_reclamation(gateway)
            self._print_summary()

            failed = [outcome.environment for outcome in self.outcomes if outcome.status != "success"]
            if failed:
                report_error = f"Not deployed: {', '.join(failed)}"
                return 1
            report_status = "success"
            return 0

        except KeyboardInterrupt:
            self.cancel_event.set()
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            report_status = "aborted"
            report_error = "Operation cancelled by user."
            return 1
        except DeployError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            report_error = str(exc)
            return 1
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            report_error = str(exc)
            return 1
        finally:
            self.report_service.finalize(report_status, error=report_error)
            gateway.close()
