"""Registry login and image naming per provider."""

import os
import shlex
from pathlib import Path
from typing import List

from axondeploy.errors import ConfigError
from axondeploy.models import RegistryConfig, RemoteCommand
from axondeploy.services.remote_gateway import write_file_command

SUPPORTED_PROVIDERS = ("docker_hub", "aws_ecr", "google_gcr", "azure_acr")


class RegistryAuthService:
    """Builds the Application Host commands that log in and pull an image."""

    def __init__(self, registry: RegistryConfig, product: str, logger):
        self.registry = registry
        self.product = product
        self.logger = logger

    def _require(self, key: str) -> str:
        value = self.registry.get(key)
        if not value:
            raise ConfigError(f"registry.{self.registry.provider}.{key} is not configured.")
        return str(value)

    def _provider(self) -> str:
        provider = self.registry.provider
        if not provider:
            raise ConfigError(
                "registry.provider is not configured. "
                f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unknown registry provider: {provider}. "
                f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        return provider

    def registry_url(self) -> str:
        provider = self._provider()
        if provider == "docker_hub":
            return "docker.io"
        if provider == "aws_ecr":
            return f"{self._require('account_id')}.dkr.ecr.{self._require('region')}.amazonaws.com"
        if provider == "google_gcr":
            if self.registry.get("use_artifact_registry", False):
                return f"{self.registry.get('location', 'us')}-docker.pkg.dev"
            return "gcr.io"
        return f"{self._require('registry_name')}.azurecr.io"

    def image_uri(self, tag: str) -> str:
        provider = self._provider()
        repository = self.registry.get("repository", self.product)
        if provider == "docker_hub":
            namespace = self.registry.get("namespace") or self._require("username")
            return f"{namespace}/{repository}:{tag}"
        if provider == "google_gcr":
            project = self._require("project_id")
            if self.registry.get("use_artifact_registry", False):
                return f"{self.registry_url()}/{project}/{repository}/{self.product}:{tag}"
            return f"gcr.io/{project}/{repository}:{tag}"
        return f"{self.registry_url()}/{repository}:{tag}"

    def login_commands(self) -> List[RemoteCommand]:
        """Commands carrying credentials; all are flagged sensitive."""
        provider = self._provider()
        if provider == "docker_hub":
            username = shlex.quote(self._require("username"))
            token = shlex.quote(self._require("access_token"))
            return [
                RemoteCommand(
                    f"printf '%s\\n' {token} | docker login -u {username} --password-stdin 2>&1",
                    "registry_login",
                    sensitive=True,
                )
            ]

        if provider == "aws_ecr":
            region = shlex.quote(self._require("region"))
            profile = self.registry.get("profile")
            profile_flag = f" --profile {shlex.quote(str(profile))}" if profile else ""
            return [
                RemoteCommand(
                    f"aws ecr get-login-password --region {region}{profile_flag} | "
                    f"docker login --username AWS --password-stdin {shlex.quote(self.registry_url())} 2>&1",
                    "registry_login",
                    sensitive=True,
                )
            ]

        if provider == "google_gcr":
            key_path = self.registry.get("service_account_key")
            if not key_path:
                return [RemoteCommand("gcloud auth configure-docker --quiet 2>&1", "registry_login")]
            local_key = Path(os.path.expanduser(str(key_path)))
            try:
                key_content = local_key.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(f"Cannot read GCP service account key '{local_key}': {exc}") from exc
            remote_key = f"/tmp/axon-gcp-key-{os.getpid()}.json"
            host = f"https://{self.registry_url()}"
            return [
                RemoteCommand(
                    f"(umask 077; {write_file_command(key_content, remote_key)})", "registry_key", sensitive=True
                ),
                RemoteCommand(
                    f"docker login -u _json_key --password-stdin {host} < {remote_key} 2>&1; "
                    f"__axon_login=$?; rm -f {remote_key}; [ \"$__axon_login\" -eq 0 ]",
                    "registry_login",
                    sensitive=True,
                ),
            ]

        registry_name = self._require("registry_name")
        url = shlex.quote(self.registry_url())
        sp_id = self.registry.get("service_principal_id")
        sp_password = self.registry.get("service_principal_password")
        admin_user = self.registry.get("admin_username")
        admin_password = self.registry.get("admin_password")
        if sp_id and sp_password:
            user, password = str(sp_id), str(sp_password)
        elif admin_user and admin_password:
            user, password = str(admin_user), str(admin_password)
        else:
            return [RemoteCommand(f"az acr login --name {shlex.quote(registry_name)} 2>&1", "registry_login")]
        return [
            RemoteCommand(
                f"printf '%s\\n' {shlex.quote(password)} | "
                f"docker login {url} --username {shlex.quote(user)} --password-stdin 2>&1",
                "registry_login",
                sensitive=True,
            )
        ]

    def pull_command(self, image: str) -> RemoteCommand:
        return RemoteCommand(f"docker pull {shlex.quote(image)} 2>&1", "image_pull")
