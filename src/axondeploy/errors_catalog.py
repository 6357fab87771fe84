"""Actionable error catalog for axon-deploy."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "connection_failed": {
        "what": "Could not reach the {role} host {target}.",
        "next": "Test the connection with `ssh -i {ssh_key} {target} 'echo Connected'`.",
    },
    "connection_lost": {
        "what": "The connection to the {role} host {target} dropped while `{label}` was running.",
        "next": "Check the host and network, then inspect the state of `{label}` before redeploying.",
    },
    "session_unrecoverable": {
        "what": "The multiplexed SSH session to the {role} host {target} broke twice in a row.",
        "next": "Remove stale sockets and retry; check `ssh -O check` against the host.",
    },
    "nginx_missing": {
        "what": "nginx is not installed on the System Host.",
        "next": "Install it with `{sudo}apt update && {sudo}apt install -y nginx`.",
    },
    "axon_dirs_missing": {
        "what": "The axon nginx directories are missing under {axon_dir}.",
        "next": "Run the System Host setup before deploying.",
    },
    "nginx_invalid_before_deploy": {
        "what": "The nginx configuration on the System Host is already invalid.",
        "next": "Fix it first: run `{sudo}nginx -t` on the System Host.",
    },
    "axon_includes_missing": {
        "what": "nginx.conf does not include the axon upstreams/sites directories.",
        "next": "Add `include {axon_dir}/upstreams/*.conf;` and `include {axon_dir}/sites/*.conf;` to nginx.conf.",
    },
    "env_file_missing": {
        "what": "Environment file not found on the Application Host: {path}",
        "next": "Create it on the Application Host before deploying.",
    },
    "image_pull_failed": {
        "what": "Registry login or image pull failed for {image}.",
        "next": "Check the `registry` credentials and that the tag exists.",
    },
    "port_exhausted": {
        "what": "No free port found in [{start}, {end}] after {attempts} attempts.",
        "next": "Free ports on the Application Host or widen AXON_PORT_RANGE_START/END.",
    },
    "bind_conflict": {
        "what": "Container {container} could not bind port {port} after one alternate lease.",
        "next": "Inspect listening sockets with `ss -tuln` on the Application Host and retry.",
    },
    "container_start_failed": {
        "what": "Container {container} failed to start.",
        "next": "Review the docker run output above and the image entrypoint.",
    },
    "health_rolled_back": {
        "what": "Container {container} did not become healthy (last status: {status}).",
        "next": "The new container was removed and the previous deployment is still live. "
        "Check the application logs before retrying.",
    },
    "health_left_running": {
        "what": "Container {container} did not become healthy (last status: {status}).",
        "next": "Auto-rollback is disabled: the old deployment is still live and {container} "
        "is running unpublished for inspection. Remove it with `docker rm -f {container}`.",
    },
    "config_rolled_back": {
        "what": "nginx rejected the new configuration for {environment}.",
        "next": "{restored} Fix the generated configuration (domain, SSL paths, custom properties) and redeploy.",
    },
    "reload_failed": {
        "what": "nginx reload failed on the System Host.",
        "next": "{restored} Inspect `{sudo}systemctl status nginx` on the System Host.",
    },
    "rollback_failed": {
        "what": "nginx configuration is still invalid after rolling back {environment}.",
        "next": "Manual intervention required now: SSH to the System Host and run `{sudo}nginx -t`.",
    },
    "archive_missing": {
        "what": "No build archive matching {pattern} found on the System Host.",
        "next": "Build and push the static site for {environment} first.",
    },
    "release_live": {
        "what": "Release {release} is already the live release for {environment}.",
        "next": "Push a new build archive before deploying again.",
    },
    "required_files_missing": {
        "what": "Required files missing from release {release}: {files}",
        "next": "Check the build output; traffic was not switched.",
    },
    "pointer_swap_failed": {
        "what": "Could not switch the current release pointer to {release}.",
        "next": "Check permissions on {path} on the System Host.",
    },
    "deploy_locked": {
        "what": "Another deployment of {environment} holds the lock ({holder}).",
        "next": "Wait for it to finish; if it is stale remove {path} on the System Host.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
