"""nginx document synthesis and naming conventions."""

import re
from typing import Optional

from axondeploy.models import ProxySettings, SslConfig

_UPSTREAM_SERVER_RE = re.compile(r"^\s*server\s+[^\s;:]+:(\d+)", re.MULTILINE)


def normalize_environment(environment: str) -> str:
    return environment.strip().lower().replace(" ", "-")


def instance_name(product: str, environment: str, timestamp: int) -> str:
    return f"{product}-{normalize_environment(environment)}-{timestamp}"


def instance_prefix(product: str, environment: str) -> str:
    return f"{product}-{normalize_environment(environment)}-"


def upstream_name(product: str, environment: str) -> str:
    return f"{product}_{normalize_environment(environment)}_backend".replace("-", "_")


def config_filename(product: str, environment: str) -> str:
    return f"{product}-{normalize_environment(environment)}.conf"


def parse_upstream_port(text: str) -> Optional[int]:
    """Port of the first ``server host:port`` entry, if any."""
    match = _UPSTREAM_SERVER_RE.search(text or "")
    return int(match.group(1)) if match else None


def _indent(block: str, prefix: str = "    ") -> str:
    lines = [line.rstrip() for line in block.strip().splitlines()]
    return "\n".join(f"{prefix}{line}" if line else "" for line in lines)


class ProxyConfigSynthesizer:
    """Renders site and upstream documents as plain text.

    Nothing here validates the result; the proxy's own ``nginx -t`` does.
    """

    def render_upstream(self, name: str, host: str, port: int) -> str:
        return f"""upstream {name} {{
    server {host}:{port};
    keepalive 32;
}}
"""

    def _listen_block(self, domain: str, ssl: Optional[SslConfig]) -> str:
        if not ssl:
            return f"""    listen 80;
    listen [::]:80;
    server_name {domain};
"""
        return f"""    listen 443 ssl http2;
    listen [::]:443 ssl http2;
    server_name {domain};

    ssl_certificate {ssl.certificate};
    ssl_certificate_key {ssl.certificate_key};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers on;
"""

    def _redirect_block(self, domain: str, ssl: Optional[SslConfig]) -> str:
        if not ssl:
            return ""
        return f"""server {{
    listen 80;
    listen [::]:80;
    server_name {domain};
    return 301 https://$host$request_uri;
}}

"""

    def render_proxy_site(
        self,
        domain: str,
        upstream: str,
        proxy: ProxySettings,
        ssl: Optional[SslConfig] = None,
        custom_directives: str = "",
    ) -> str:
        custom = f"\n{_indent(custom_directives)}\n" if custom_directives.strip() else ""
        return f"""{self._redirect_block(domain, ssl)}server {{
{self._listen_block(domain, ssl)}{custom}
    location / {{
        proxy_pass http://{upstream};
        proxy_http_version 1.1;
        proxy_set_header Connection "";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;

        proxy_connect_timeout {proxy.timeout}s;
        proxy_send_timeout {proxy.timeout}s;
        proxy_read_timeout {proxy.timeout}s;

        proxy_buffer_size {proxy.buffer_size};
        proxy_buffers {proxy.buffers};
        proxy_busy_buffers_size {proxy.busy_buffers_size};
    }}
}}
"""

    def render_static_site(
        self,
        domain: str,
        root: str,
        ssl: Optional[SslConfig] = None,
        custom_directives: str = "",
    ) -> str:
        custom = f"\n{_indent(custom_directives)}\n" if custom_directives.strip() else ""
        return f"""{self._redirect_block(domain, ssl)}server {{
{self._listen_block(domain, ssl)}
    root {root};
    index index.html;
{custom}
    location / {{
        try_files $uri $uri/ /index.html;
    }}

    location ~* \\.(?:css|js|jpg|jpeg|gif|png|svg|ico|woff2?)$ {{
        expires 30d;
        add_header Cache-Control "public, immutable";
    }}
}}
"""
