import pytest

from axondeploy.errors import ConfigError
from axondeploy.models import HostRole
from axondeploy.services.config_loader import ConfigLoader

DOCKER_CONFIG = """
product:
  name: shop
  type: docker
servers:
  system:
    host: proxy.example.com
    user: deploy
    ssh_key: ~/.ssh/deploy
  application:
    host: app.example.com
    private_ip: 10.0.0.5
registry:
  provider: docker_hub
  docker_hub:
    username: acme
    access_token: ${DOCKER_TOKEN}
docker:
  container_port: 8080
  env_vars:
    NODE_ENV: production
  extra_hosts:
    - db:10.0.0.9
  health_check:
    retries: 5
deployment:
  enable_auto_rollback: false
nginx:
  axon_dir: /etc/nginx/axon.d/
  use_sudo: false
environments:
  production:
    domain: shop.example.com
    env_path: /srv/shop/.env.production
    ssl:
      certificate: /etc/ssl/shop.crt
      certificate_key: /etc/ssl/shop.key
  staging:
    image_tag: edge
"""


def _write(tmp_path, text):
    config_file = tmp_path / "axon.config.yml"
    config_file.write_text(text, encoding="utf-8")
    return str(config_file)


def test_config_loader_builds_docker_config(tmp_path):
    loader = ConfigLoader(environ={"DOCKER_TOKEN": "s3cret"})

    config = loader.load(_write(tmp_path, DOCKER_CONFIG))

    assert config.product.name == "shop"
    assert config.host(HostRole.APPLICATION).private_ip == "10.0.0.5"
    assert config.host(HostRole.SYSTEM).ssh_key == "~/.ssh/deploy"
    assert config.registry.get("access_token") == "s3cret"
    assert config.docker.container_port == 8080
    assert config.docker.env_vars == {"NODE_ENV": "production"}
    assert config.docker.extra_hosts == ("db:10.0.0.9",)
    assert config.docker.healthcheck_retries == 5
    assert config.deployment.auto_rollback is False
    assert config.nginx.upstreams_dir == "/etc/nginx/axon.d/upstreams"
    assert config.nginx.use_sudo is False
    production = config.environment("production")
    assert production.ssl.certificate == "/etc/ssl/shop.crt"
    assert production.env_path == "/srv/shop/.env.production"
    assert config.environment("staging").image_tag == "edge"
    assert config.environment("staging").domain == "_"
    assert config.port_range.start == 30000


def test_config_loader_rejects_unknown_keys(tmp_path):
    loader = ConfigLoader(environ={})

    with pytest.raises(ConfigError, match="Unknown configuration keys: unknown_key"):
        loader.load(_write(tmp_path, "unknown_key: true\n"))


def test_config_loader_requires_referenced_variables(tmp_path):
    loader = ConfigLoader(environ={})

    with pytest.raises(ConfigError, match="'DOCKER_TOKEN' referenced in the config is not set"):
        loader.load(_write(tmp_path, DOCKER_CONFIG))


def test_config_loader_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Config file not found"):
        ConfigLoader(environ={}).load(str(tmp_path / "missing.yml"))

    with pytest.raises(ConfigError, match="No configuration file given"):
        ConfigLoader(environ={}).load(None)


def test_config_loader_rejects_non_mapping_root(tmp_path):
    with pytest.raises(ConfigError, match="YAML mapping at the root"):
        ConfigLoader(environ={}).load(_write(tmp_path, "- a\n- b\n"))


def test_docker_product_requires_application_server(tmp_path):
    text = """
product:
  name: shop
servers:
  system:
    host: proxy.example.com
environments:
  production: {}
"""
    with pytest.raises(ConfigError, match="'servers.application' is required"):
        ConfigLoader(environ={}).load(_write(tmp_path, text))


def test_static_product_needs_only_system_server(tmp_path):
    text = """
product:
  name: docs
  type: static
servers:
  system:
    host: proxy.example.com
static:
  keep_releases: 3
  shared_dirs: [uploads]
environments:
  production:
"""
    config = ConfigLoader(environ={}).load(_write(tmp_path, text))

    assert config.product.type == "static"
    assert config.static.keep_releases == 3
    assert config.static.shared_dirs == ("uploads",)
    assert config.static.required_files == ("index.html",)
    assert list(config.environments) == ["production"]


def test_environment_overrides_port_range_and_multiplexing(tmp_path):
    text = """
product:
  name: docs
  type: static
servers:
  system:
    host: proxy.example.com
port_range:
  start: 31000
environments:
  production:
"""
    loader = ConfigLoader(
        environ={"AXON_PORT_RANGE_END": "31010", "AXON_PORT_MAX_ATTEMPTS": "7", "AXON_SSH_MULTIPLEX": "0"}
    )

    config = loader.load(_write(tmp_path, text))

    assert (config.port_range.start, config.port_range.end, config.port_range.max_attempts) == (31000, 31010, 7)
    assert config.ssh.multiplex is False


def test_invalid_port_range_is_config_error(tmp_path):
    text = """
product:
  name: docs
  type: static
servers:
  system:
    host: proxy.example.com
port_range:
  start: 32000
  end: 31000
environments:
  production:
"""
    with pytest.raises(ConfigError, match="greater than end"):
        ConfigLoader(environ={}).load(_write(tmp_path, text))


def test_unknown_environment_lists_configured_ones(tmp_path):
    config = ConfigLoader(environ={"DOCKER_TOKEN": "x"}).load(_write(tmp_path, DOCKER_CONFIG))

    with pytest.raises(ConfigError, match="Configured environments: production, staging"):
        config.environment("qa")
