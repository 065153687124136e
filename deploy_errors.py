"""Exception types raised by the Vespa deployment CLI."""


class DeployError(RuntimeError):
    """Base class for failures that end a deploy.py invocation.

    ``exit_code`` is what ``main()`` returns to the shell.
    """

    exit_code = 1


class UsageError(DeployError):
    """Unknown command or option. Nothing has been executed yet."""


class RuntimeUnavailableError(DeployError):
    """Neither ``docker compose`` nor ``docker-compose`` responded."""


class NotRunningError(DeployError):
    """The Vespa container is not running."""


class ConfigError(DeployError):
    """The YAML settings file could not be used."""
