"""Default values shared across axon-deploy."""

PORT_RANGE_START = 30000
PORT_RANGE_END = 32767
PORT_MAX_ATTEMPTS = 50

NGINX_AXON_DIR = "/etc/nginx/axon.d"
NGINX_CONFIG_PATH = "/etc/nginx/nginx.conf"
NGINX_DEFAULT_DOMAIN = "_"
NGINX_DEFAULT_TIMEOUT = "60"
NGINX_DEFAULT_BUFFER_SIZE = "128k"
NGINX_DEFAULT_BUFFERS = "4 256k"
NGINX_DEFAULT_BUSY_BUFFERS_SIZE = "256k"

CONTAINER_PORT = 3000
RESTART_POLICY = "unless-stopped"
LOG_DRIVER = "json-file"
LOG_MAX_SIZE = "10m"
LOG_MAX_FILE = "3"

HEALTH_MAX_RETRIES = 30
HEALTH_RETRY_INTERVAL = 2.0
HEALTH_INTERVAL = "30s"
HEALTH_TIMEOUT = "10s"
HEALTH_RETRIES = 3
HEALTH_START_PERIOD = "40s"

GRACEFUL_SHUTDOWN_TIMEOUT = 30

STATIC_KEEP_RELEASES = 5
STATIC_DEPLOY_USER = "www-data"
STATIC_ARCHIVE_GLOB = "/tmp/static-build-*.tar.gz"
RELEASE_NAME_FORMAT = "%Y%m%d%H%M%S"

SSH_SERVER_ALIVE_INTERVAL = 60
SSH_SERVER_ALIVE_COUNT_MAX = 3
SSH_CONNECT_TIMEOUT = 10
SSH_COMMAND_TIMEOUT = 900.0
