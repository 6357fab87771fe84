import os
import subprocess

import pytest

from fakes import DummyConsole, DummyLogger, FakeGateway, FakeProxy, make_config, snapshot_handlers

from axondeploy.errors import ConfigValidationError, CriticalRollbackFailure, DeployError
from axondeploy.models import HostRole, StaticConfig
from axondeploy.services.static_deploy import (
    StaticDeployOrchestrator,
    release_name_from_archive,
    select_releases_to_prune,
)

SITE = "/etc/nginx/axon.d/sites/shop-production.conf"
ROOT = "/var/www/production"
PREVIOUS = "20240107000000"
RELEASE = "20240108000000"
ALL_RELEASES = [f"2024010{day}000000" for day in range(1, 9)]
LIVE_SITE = f"server {{\n    root {ROOT}/current;\n}}\n"

BASE_HANDLERS = {
    "archive": (f"/tmp/static-build-{RELEASE}.tar.gz\n", 0),
    "current": (f"{ROOT}/releases/{PREVIOUS}\n", 0),
    "required_*": ("ok\n", 0),
    "releases": ("\n".join(ALL_RELEASES) + "\n", 0),
}


def _orchestrator(files, handlers=None, validator=None, static=None):
    config = make_config(product_type="static", static=static)
    gateway = FakeGateway({**snapshot_handlers(files), **BASE_HANDLERS, **(handlers or {})})
    proxy = FakeProxy(files, gateway, config.nginx, validator)
    orchestrator = StaticDeployOrchestrator(
        config,
        gateway,
        DummyLogger(),
        DummyConsole(),
        proxy=proxy,
        clock=lambda: 1700000100,
    )
    return orchestrator, gateway, proxy


def test_static_deploy_swaps_pointer_publishes_and_prunes():
    files = {SITE: LIVE_SITE}
    orchestrator, gateway, proxy = _orchestrator(files)

    outcome = orchestrator.deploy("production")

    assert outcome.instance == RELEASE
    assert outcome.previous_instance == PREVIOUS
    assert outcome.states == [
        "locating",
        "materializing",
        "linking",
        "validating",
        "swapping_pointer",
        "publishing_config",
        "pruning",
        "done",
    ]
    assert gateway.commands("extract") == [
        f"tar -xzf /tmp/static-build-{RELEASE}.tar.gz -C {ROOT}/releases/{RELEASE} 2>&1"
    ]
    [swap] = gateway.commands("swap")
    assert f"ln -sfn {ROOT}/releases/{RELEASE} {ROOT}/current.tmp." in swap
    assert f"mv -Tf {ROOT}/current.tmp." in swap
    assert f"root {ROOT}/current;" in files[SITE]
    assert proxy.reloads == 1
    pruned = [command for _, label, command in gateway.executed if label.startswith("prune_")]
    assert pruned == [f"rm -rf {ROOT}/releases/2024010{day}000000" for day in (1, 2, 3)]
    assert set(gateway.labels(HostRole.APPLICATION)) == set()


def test_shared_dirs_are_linked_into_release():
    static = StaticConfig(shared_dirs=("uploads",))
    orchestrator, gateway, _ = _orchestrator({SITE: LIVE_SITE}, static=static)

    orchestrator.deploy("production")

    [link] = gateway.commands("link_0")
    assert f"ln -s {ROOT}/shared/uploads {ROOT}/releases/{RELEASE}/uploads" in link


def test_ownership_failure_is_a_warning():
    orchestrator, _, _ = _orchestrator({SITE: LIVE_SITE}, handlers={"permissions": ("", 1)})

    outcome = orchestrator.deploy("production")

    assert outcome.state == "done"
    assert outcome.warnings == ["ownership"]


def test_missing_archive_fails_before_changes():
    orchestrator, gateway, _ = _orchestrator({SITE: LIVE_SITE}, handlers={"archive": ("", 0)})

    with pytest.raises(DeployError, match="No build archive matching /tmp/static-build-\\*.tar.gz"):
        orchestrator.deploy("production")

    assert "prepare" not in gateway.labels()


def test_redeploying_live_release_is_refused():
    orchestrator, gateway, _ = _orchestrator(
        {SITE: LIVE_SITE},
        handlers={"current": (f"{ROOT}/releases/{RELEASE}\n", 0)},
    )

    with pytest.raises(DeployError, match="already the live release"):
        orchestrator.deploy("production")

    assert "prepare" not in gateway.labels()


def test_missing_required_file_discards_release_without_swapping():
    orchestrator, gateway, proxy = _orchestrator({SITE: LIVE_SITE}, handlers={"required_*": ("missing\n", 0)})

    with pytest.raises(DeployError, match="Required files missing from release 20240108000000: index.html"):
        orchestrator.deploy("production")

    assert gateway.commands("discard") == [f"rm -rf {ROOT}/releases/{RELEASE}"]
    assert "swap" not in gateway.labels()
    assert proxy.published == []


def test_failed_extract_discards_release():
    orchestrator, gateway, _ = _orchestrator({SITE: LIVE_SITE}, handlers={"extract": ("gzip: not in gzip format\n", 2)})

    with pytest.raises(DeployError, match="Could not materialize release"):
        orchestrator.deploy("production")

    assert "discard" in gateway.labels()


def test_config_failure_repoints_previous_release_and_restores_site():
    files = {SITE: LIVE_SITE}
    orchestrator, gateway, proxy = _orchestrator(files, validator=lambda current: current.get(SITE) == LIVE_SITE)

    with pytest.raises(ConfigValidationError, match=f"current points at {PREVIOUS} again"):
        orchestrator.deploy("production")

    [repoint] = gateway.commands("repoint")
    assert f"ln -sfn {ROOT}/releases/{PREVIOUS} " in repoint
    assert files == {SITE: LIVE_SITE}
    assert proxy.reloads == 1
    assert "prune_0" not in gateway.labels()


def test_first_static_deploy_config_failure_removes_pointer_and_site():
    files = {}
    orchestrator, gateway, proxy = _orchestrator(
        files,
        handlers={"current": ("", 0)},
        validator=lambda current: SITE not in current,
    )

    with pytest.raises(ConfigValidationError, match="current pointer and the new site configuration were removed"):
        orchestrator.deploy("production")

    assert gateway.commands("repoint") == [f"rm -f {ROOT}/current"]
    assert files == {}
    assert proxy.reloads == 0


def test_failed_repoint_is_critical():
    orchestrator, _, _ = _orchestrator(
        {SITE: LIVE_SITE},
        handlers={"repoint": ("", 1)},
        validator=lambda current: current.get(SITE) == LIVE_SITE,
    )

    with pytest.raises(CriticalRollbackFailure):
        orchestrator.deploy("production")


def test_select_releases_to_prune_keeps_newest():
    assert select_releases_to_prune(ALL_RELEASES, keep=5) == ALL_RELEASES[:3]
    assert select_releases_to_prune(ALL_RELEASES[:3], keep=5) == []


def test_select_releases_to_prune_never_removes_current():
    assert select_releases_to_prune(ALL_RELEASES, keep=2, current=ALL_RELEASES[0]) == ALL_RELEASES[1:6]
    assert select_releases_to_prune(ALL_RELEASES, keep=0) == ALL_RELEASES[:7]


def test_release_name_from_archive():
    assert release_name_from_archive("/tmp/static-build-20240108000000.tar.gz", "x") == "20240108000000"
    assert release_name_from_archive("/tmp/site.tar.gz", "20231114221500") == "20231114221500"


def test_select_releases_to_prune_ignores_listing_order():
    shuffled = [ALL_RELEASES[index] for index in (4, 0, 7, 2, 6, 1, 5, 3)]

    assert select_releases_to_prune(shuffled, keep=5) == ALL_RELEASES[:3]


def test_prune_uses_timestamps_not_listing_order():
    listing = "\n".join(reversed(ALL_RELEASES)) + "\n"
    orchestrator, gateway, _ = _orchestrator({SITE: LIVE_SITE}, handlers={"releases": (listing, 0)})

    orchestrator.deploy("production")

    pruned = [command for _, label, command in gateway.executed if label.startswith("prune_")]
    assert pruned == [f"rm -rf {ROOT}/releases/2024010{day}000000" for day in (1, 2, 3)]


def test_swap_command_replaces_live_pointer_on_local_shell(tmp_path):
    orchestrator, _, _ = _orchestrator({SITE: LIVE_SITE})
    previous = tmp_path / "releases" / PREVIOUS
    release = tmp_path / "releases" / RELEASE
    previous.mkdir(parents=True)
    release.mkdir()
    current = tmp_path / "current"
    current.symlink_to(previous)

    result = subprocess.run(
        ["bash", "-c", orchestrator._swap_command(str(release), str(current))],
        capture_output=True,
        text=True,
    )

    assert result.returncode == 0, result.stderr
    assert os.readlink(current) == str(release)
    assert sorted(path.name for path in tmp_path.iterdir()) == ["current", "releases"]


def test_failed_swap_leaves_no_staging_link(tmp_path):
    orchestrator, _, _ = _orchestrator({SITE: LIVE_SITE})
    current = tmp_path / "current"
    (current / "occupied").mkdir(parents=True)

    result = subprocess.run(
        ["bash", "-c", orchestrator._swap_command(str(tmp_path / "releases" / RELEASE), str(current))],
        capture_output=True,
        text=True,
    )

    assert result.returncode != 0
    assert sorted(path.name for path in tmp_path.iterdir()) == ["current"]
    assert not current.is_symlink()


def _interrupting(method):
    def wrapper(*args, **kwargs):
        method(*args, **kwargs)
        raise KeyboardInterrupt

    return wrapper


def test_interrupt_after_swap_repoints_previous_release():
    files = {SITE: LIVE_SITE}
    orchestrator, gateway, proxy = _orchestrator(files)
    proxy.publish = _interrupting(proxy.publish)
    transitions = []

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production", on_transition=transitions.append)

    [repoint] = gateway.commands("repoint")
    assert f"ln -sfn {ROOT}/releases/{PREVIOUS} " in repoint
    assert files == {SITE: LIVE_SITE}
    assert transitions[-2:] == ["rolling_back", "failed"]
    assert "prune_0" not in gateway.labels()


def test_interrupt_before_swap_discards_release():
    orchestrator, gateway, _ = _orchestrator({SITE: LIVE_SITE})
    gateway.handlers["permissions"] = _interrupting(lambda command: ("", 0))

    with pytest.raises(KeyboardInterrupt):
        orchestrator.deploy("production")

    assert gateway.commands("discard") == [f"rm -rf {ROOT}/releases/{RELEASE}"]
    assert "swap" not in gateway.labels()
