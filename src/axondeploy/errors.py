"""Domain errors for axon-deploy."""


class DeployError(RuntimeError):
    """Raised when a deployment cannot continue safely."""


class ConfigError(DeployError):
    """Raised when the configuration file is missing or invalid."""


class RemoteConnectionError(DeployError):
    """Host unreachable, authentication refused or keepalive lost."""


class StaleSessionError(DeployError):
    """The multiplexed control channel for a host role is broken."""


class UnknownLabelError(DeployError):
    """A batch result was requested for a label the job never contained."""


class PortExhaustionError(DeployError):
    """No free port was found within the configured attempt budget."""


class BindConflictError(DeployError):
    """The new instance could not bind its leased port."""


class HealthCheckTimeoutError(DeployError):
    """The new instance never reported healthy."""


class ConfigValidationError(DeployError):
    """The proxy rejected the newly published documents."""


class CriticalRollbackFailure(DeployError):
    """The proxy configuration is still invalid after a rollback."""


class DeployLockError(DeployError):
    """Another run holds the deploy lock for the environment."""
