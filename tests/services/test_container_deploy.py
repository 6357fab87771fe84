import threading

import pytest

from fakes import (
    DummyConsole,
    DummyLogger,
    FakeGateway,
    FakeProxy,
    ScriptedRandom,
    make_config,
    snapshot_handlers,
)

from axondeploy.errors import (
    BindConflictError,
    ConfigValidationError,
    CriticalRollbackFailure,
    DeployError,
    DeployLockError,
    HealthCheckTimeoutError,
)
from axondeploy.models import DeploymentSettings, EnvironmentConfig, HostRole
from axondeploy.services.container_deploy import ContainerDeployOrchestrator, is_port_conflict, parse_instances
from axondeploy.services.port_allocator import PortAllocator
from axondeploy.services.proxy_config import ProxyConfigSynthesizer

UPSTREAM = "/etc/nginx/axon.d/upstreams/shop-production.conf"
SITE = "/etc/nginx/axon.d/sites/shop-production.conf"
OLD_CONTAINER = "shop-production-1690000000"
NEW_CONTAINER = "shop-production-1700000100"

LIVE_FILES = {
    UPSTREAM: ProxyConfigSynthesizer().render_upstream("shop_production_backend", "10.0.0.5", 30001),
    SITE: "server {\n    listen 80;\n    server_name shop.example.com;\n}\n",
}

BASE_HANDLERS = {
    "instances": (f"{OLD_CONTAINER}\t0.0.0.0:30001->3000/tcp\n", 0),
    "probe": ("free\n", 0),
    "health": ("healthy\n", 0),
}


def _orchestrator(files, handlers=None, validator=None, ports=(30100,), **config_kwargs):
    config = make_config(**config_kwargs)
    gateway = FakeGateway({**snapshot_handlers(files), **BASE_HANDLERS, **(handlers or {})})
    proxy = FakeProxy(files, gateway, config.nginx, validator)
    logger = DummyLogger()
    allocator = PortAllocator(gateway, config.port_range, logger, rng=ScriptedRandom(ports))
    orchestrator = ContainerDeployOrchestrator(
        config,
        gateway,
        logger,
        DummyConsole(),
        allocator=allocator,
        proxy=proxy,
        clock=lambda: 1700000100,
    )
    return orchestrator, gateway, proxy


def test_successful_deploy_switches_upstream_and_reclaims_old_container():
    files = dict(LIVE_FILES)
    orchestrator, gateway, proxy = _orchestrator(files)
    transitions = []

    outcome = orchestrator.deploy("production", on_transition=transitions.append)

    assert outcome.instance == NEW_CONTAINER
    assert outcome.port == 30100
    assert outcome.previous_port == 30001
    assert outcome.previous_instance == OLD_CONTAINER
    assert "server 10.0.0.5:30100;" in files[UPSTREAM]
    assert "proxy_pass http://shop_production_backend;" in files[SITE]
    assert proxy.reloads == 1
    assert transitions == [
        "detecting",
        "allocating",
        "starting",
        "health_polling",
        "publishing_config",
        "cutting_over",
        "reclaiming_old",
        "done",
    ]
    assert outcome.states == transitions
    assert outcome.reclamation is not None
    assert OLD_CONTAINER in gateway.commands("reclaim")[0]
    assert NEW_CONTAINER not in gateway.commands("reclaim")[0]
    assert all(handle.released for handle in gateway.handles[:2])


def test_new_container_never_reuses_live_port():
    files = dict(LIVE_FILES)
    orchestrator, gateway, _ = _orchestrator(files, ports=(30001, 30002))

    outcome = orchestrator.deploy("production")

    assert outcome.port == 30002
    assert [command for command in gateway.commands("probe") if "':30001 '" in command] == []


def test_image_tag_defaults_to_environment_name():
    orchestrator, gateway, _ = _orchestrator(dict(LIVE_FILES))

    orchestrator.deploy("production")

    assert gateway.commands("image_pull") == ["docker pull acme/shop:production 2>&1"]


def test_health_timeout_rolls_back_and_leaves_proxy_untouched():
    files = dict(LIVE_FILES)
    orchestrator, gateway, proxy = _orchestrator(files, handlers={"health": ("starting\n", 0)})

    with pytest.raises(HealthCheckTimeoutError, match="did not become healthy") as exc_info:
        orchestrator.deploy("production")

    assert "previous deployment is still live" in str(exc_info.value)
    assert files == LIVE_FILES
    assert proxy.published == []
    assert proxy.reloads == 0
    assert gateway.labels().count("health") == 3
    assert gateway.commands("remove") == [f"docker rm -f {NEW_CONTAINER} >/dev/null 2>&1 || true"]
    assert "reclaim" not in gateway.labels()


def test_health_timeout_without_auto_rollback_keeps_container():
    files = dict(LIVE_FILES)
    orchestrator, gateway, _ = _orchestrator(
        files,
        handlers={"health": ("unhealthy\n", 0)},
        deployment=DeploymentSettings(lock=False, auto_rollback=False),
    )

    with pytest.raises(HealthCheckTimeoutError, match="Auto-rollback is disabled"):
        orchestrator.deploy("production")

    assert "remove" not in gateway.labels()
    assert files == LIVE_FILES


def test_cancelled_health_poll_rolls_back():
    cancel_event = threading.Event()
    cancel_event.set()
    orchestrator, gateway, _ = _orchestrator(dict(LIVE_FILES))

    with pytest.raises(HealthCheckTimeoutError, match="last status: cancelled"):
        orchestrator.deploy("production", cancel_event=cancel_event)

    assert "health" not in gateway.labels()
    assert "remove" in gateway.labels()


def test_missing_health_check_proceeds_with_warning():
    orchestrator, _, _ = _orchestrator(dict(LIVE_FILES), handlers={"health": ("none\n", 0)})

    outcome = orchestrator.deploy("production")

    assert outcome.state == "done"
    assert any("no health check" in message for message in orchestrator.logger.warnings)


def test_first_deploy_config_failure_leaves_no_files():
    files = {}
    orchestrator, gateway, proxy = _orchestrator(
        files,
        handlers={"instances": ("", 0)},
        validator=lambda current: SITE not in current,
    )

    with pytest.raises(ConfigValidationError, match="nginx rejected the new configuration") as exc_info:
        orchestrator.deploy("production")

    assert "new proxy configuration files were removed" in str(exc_info.value)
    assert files == {}
    assert proxy.test()[0] is True
    assert proxy.reloads == 0
    assert "remove" in gateway.labels()


def test_config_failure_restores_previous_documents_byte_for_byte():
    files = dict(LIVE_FILES)
    orchestrator, _, proxy = _orchestrator(
        files,
        validator=lambda current: "30100" not in current.get(UPSTREAM, ""),
    )

    with pytest.raises(ConfigValidationError, match="previous proxy configuration was restored"):
        orchestrator.deploy("production")

    assert files == LIVE_FILES
    assert proxy.reloads == 1


def test_reload_failure_restores_and_reports():
    files = dict(LIVE_FILES)
    orchestrator, _, proxy = _orchestrator(files)
    proxy.reload = lambda: (False, "Job for nginx.service failed")

    with pytest.raises(ConfigValidationError, match="nginx reload failed"):
        orchestrator.deploy("production")

    assert files == LIVE_FILES


def test_rollback_that_cannot_validate_is_critical():
    files = dict(LIVE_FILES)
    orchestrator, _, _ = _orchestrator(files, validator=lambda current: False)

    with pytest.raises(CriticalRollbackFailure, match="Manual intervention required"):
        orchestrator.deploy("production")


def test_bind_conflict_retries_once_with_new_lease():
    attempts = []

    def run(command):
        attempts.append(command)
        if len(attempts) == 1:
            return "Bind for 0.0.0.0:30100 failed: port is already allocated\n", 125
        return "f00d\n", 0

    files = dict(LIVE_FILES)
    orchestrator, gateway, _ = _orchestrator(files, handlers={"run": run}, ports=(30100, 30200))

    outcome = orchestrator.deploy("production")

    assert outcome.port == 30200
    assert "-p 30200:3000" in attempts[1]
    assert "server 10.0.0.5:30200;" in files[UPSTREAM]
    assert len(gateway.commands("probe")) == 2


def test_second_bind_conflict_fails_without_touching_proxy():
    files = {}
    orchestrator, gateway, proxy = _orchestrator(
        files,
        handlers={"instances": ("", 0), "run": ("Error: address already in use\n", 125)},
        ports=(30100, 30200),
    )

    with pytest.raises(BindConflictError, match="after one alternate lease"):
        orchestrator.deploy("production")

    assert files == {}
    assert proxy.published == []
    assert gateway.labels().count("run") == 2
    assert "remove" in gateway.labels()


def test_start_failure_that_is_not_a_bind_conflict():
    orchestrator, gateway, _ = _orchestrator(
        dict(LIVE_FILES),
        handlers={"run": ("docker: Error response from daemon: manifest unknown\n", 125)},
    )

    with pytest.raises(DeployError, match="failed to start"):
        orchestrator.deploy("production")

    assert gateway.labels().count("run") == 1


def test_image_pull_failure_is_actionable():
    orchestrator, gateway, _ = _orchestrator(dict(LIVE_FILES), handlers={"registry_login": ("denied\n", 1)})

    with pytest.raises(DeployError, match="Registry login or image pull failed for acme/shop:production"):
        orchestrator.deploy("production")

    assert "run" not in gateway.labels()


def test_missing_env_file_fails_during_detection():
    environments = {"production": EnvironmentConfig("production", env_path="/srv/shop/.env")}
    orchestrator, gateway, _ = _orchestrator(
        dict(LIVE_FILES),
        handlers={"env_file": ("missing\n", 0)},
        environments=environments,
    )
    transitions = []

    with pytest.raises(DeployError, match="Environment file not found on the Application Host: /srv/shop/.env"):
        orchestrator.deploy("production", on_transition=transitions.append)

    assert transitions == ["detecting", "failed"]
    assert "probe" not in gateway.labels()


def test_lock_guards_the_deployment():
    orchestrator, gateway, _ = _orchestrator(
        dict(LIVE_FILES),
        handlers={"lock": ("acquired\n", 0)},
        deployment=DeploymentSettings(lock=True),
    )

    orchestrator.deploy("production")

    labels = gateway.labels(HostRole.SYSTEM)
    assert labels[:2] == ["locks_dir", "lock"]
    assert labels[-1] == "unlock"


def test_held_lock_stops_before_any_change():
    orchestrator, gateway, _ = _orchestrator(
        dict(LIVE_FILES),
        handlers={"lock": ("ci@runner pid=1 since=1\n", 0)},
        deployment=DeploymentSettings(lock=True),
    )

    with pytest.raises(DeployLockError):
        orchestrator.deploy("production")

    assert gateway.labels() == ["locks_dir", "lock"]


def test_port_conflict_detection_and_instance_parsing():
    assert is_port_conflict("Bind for 0.0.0.0:30100 failed: port is already allocated")
    assert not is_port_conflict("manifest unknown")
    assert parse_instances("a\t0.0.0.0:1->3000/tcp\n\nb\t\n") == [("a", "0.0.0.0:1->3000/tcp"), ("b", "")]


def _interrupt_once(method):
    calls = []

    def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise KeyboardInterrupt
        return method(*args, **kwargs)

    return wrapper


def test_interrupt_after_publish_restores_documents_and_removes_container():
    files = dict(LIVE_FILES)
    orchestrator, gateway, proxy = _orchestrator(files)
    proxy.reload = _interrupt_once(proxy.reload)
    cancel_event = threading.Event()
    transitions = []

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production", cancel_event=cancel_event, on_transition=transitions.append)

    assert cancel_event.is_set()
    assert len(proxy.published) == 1
    assert files == LIVE_FILES
    assert proxy.reloads == 1
    assert gateway.commands("remove") == [f"docker rm -f {NEW_CONTAINER} >/dev/null 2>&1 || true"]
    assert "reclaim" not in gateway.labels()
    assert transitions[-2:] == ["rolling_back", "failed"]


def test_interrupt_during_health_polling_removes_container():
    files = dict(LIVE_FILES)
    orchestrator, gateway, proxy = _orchestrator(
        files,
        handlers={"health": _interrupt_once(lambda command: ("healthy\n", 0))},
    )

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production")

    assert proxy.published == []
    assert proxy.reloads == 0
    assert files == LIVE_FILES
    assert "remove" in gateway.labels()


def test_interrupt_before_start_changes_nothing():
    orchestrator, gateway, proxy = _orchestrator(
        dict(LIVE_FILES),
        handlers={"probe": _interrupt_once(lambda command: ("free\n", 0))},
    )
    transitions = []

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production", on_transition=transitions.append)

    assert "remove" not in gateway.labels()
    assert proxy.reloads == 0
    assert transitions[-1] == "failed"


def test_interrupt_after_cutover_keeps_new_container():
    files = dict(LIVE_FILES)
    orchestrator, gateway, _ = _orchestrator(
        files,
        handlers={"reclaim": _interrupt_once(lambda command: ("", 0))},
    )

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production")

    assert "server 10.0.0.5:30100;" in files[UPSTREAM]
    assert "remove" not in gateway.labels()


def test_lock_is_released_when_interrupted():
    orchestrator, gateway, proxy = _orchestrator(
        dict(LIVE_FILES),
        handlers={"lock": ("acquired\n", 0)},
        deployment=DeploymentSettings(lock=True),
    )
    proxy.reload = _interrupt_once(proxy.reload)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production")

    assert gateway.labels(HostRole.SYSTEM)[-1] == "unlock"
