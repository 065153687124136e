"""Settings for a single deploy.py invocation.

Each value is resolved once, in this order: command-line flag, process
environment, the project's ``.env`` file, the optional YAML settings file,
built-in default. The resulting ``DeployConfig`` is frozen.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import dotenv_values

from deploy_errors import ConfigError

log = logging.getLogger(__name__)

DATA_DIR_ENV_VAR = "VESPA_DATA_DIR"
CONFIG_ENV_VAR = "VESPA_DEPLOY_CONFIG"

DEFAULT_DATA_DIR = "./data"
DEFAULT_SETTINGS_FILE = "vespa-deploy.yml"
ENV_FILE = ".env"
ENV_TEMPLATE_FILE = ".env.default"

# Paths inside the Vespa image.
VESPA_DATA_MOUNT = "/opt/vespa/var"
VESPA_MODELS_MOUNT = "/opt/vespa/models"

# YAML key -> type the value is coerced to.
_SETTINGS_TYPES = {
    "container_name": str,
    "image": str,
    "build_context": str,
    "cpu_dockerfile": str,
    "gpu_dockerfile": str,
    "query_port": int,
    "config_port": int,
    "service_uid": int,
    "service_gid": int,
    "restart_cooldown": float,
    "permission_image": str,
}


def load_settings_file(path: Path, required: bool = False) -> dict:
    """Reads the YAML settings file. A missing optional file yields ``{}``."""
    if not path.is_file():
        if required:
            raise ConfigError(f"Settings file '{path}' not found.")
        log.debug(f"No settings file at {path}, using defaults.")
        return {}

    try:
        log.debug(f"Reading settings file: {path}")
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}.")

    unknown = sorted(set(raw) - set(_SETTINGS_TYPES))
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(unknown)}")

    settings = {}
    for key, value in raw.items():
        try:
            settings[key] = _SETTINGS_TYPES[key](value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for '{key}' in {path}: {value!r}") from e
    if settings.get("restart_cooldown", 0) < 0:
        raise ConfigError(f"'restart_cooldown' in {path} must not be negative, got {settings['restart_cooldown']}")
    log.debug("Loaded settings: %s", settings)
    return settings


@dataclass(frozen=True)
class DeployConfig:
    command: str
    data_dir: Path
    build_context: Path
    env_file: Path
    env_template: Path
    force_gpu: bool = False
    force_cpu: bool = False
    verbose: bool = False
    container_name: str = "vespa"
    image: str = "vespa-custom:latest"
    cpu_dockerfile: str = "Dockerfile"
    gpu_dockerfile: str = "Dockerfile.gpu"
    query_port: int = 8080
    config_port: int = 19071
    service_uid: int = 1000
    service_gid: int = 1000
    restart_cooldown: float = 3.0
    permission_image: str = "busybox"
    settings_file: Path = field(default=None, compare=False)

    # --- Data directory layout ---
    @property
    def vespa_data_dir(self):
        return self.data_dir / "vespa-data"

    @property
    def vespa_models_dir(self):
        return self.data_dir / "vespa-models"

    @property
    def vespa_tmp_dir(self):
        return self.vespa_data_dir / "tmp"

    @property
    def ports(self):
        """Published ports as (host, container) pairs."""
        return [(self.query_port, 8080), (self.config_port, 19071)]

    @property
    def mounts(self):
        """Bind mounts as (host path, container path) pairs."""
        return [
            (self.vespa_data_dir, VESPA_DATA_MOUNT),
            (self.vespa_models_dir, VESPA_MODELS_MOUNT),
        ]

    @classmethod
    def from_args(cls, args, environ=None, cwd=None, use_settings_file=True):
        """Builds the configuration from parsed CLI arguments.

        With ``use_settings_file=False`` the YAML settings file is not read.
        """
        environ = os.environ if environ is None else environ
        base = Path(cwd) if cwd is not None else Path.cwd()

        dotenv = {
            k: v for k, v in dotenv_values(base / ENV_FILE).items() if v is not None
        }

        def lookup(key):
            if environ.get(key):
                return environ[key]
            return dotenv.get(key) or None

        settings_name = lookup(CONFIG_ENV_VAR)
        settings_path = base / (settings_name or DEFAULT_SETTINGS_FILE)
        settings = load_settings_file(settings_path, required=bool(settings_name)) if use_settings_file else {}

        data_dir = Path(os.path.abspath(base / (lookup(DATA_DIR_ENV_VAR) or DEFAULT_DATA_DIR)))
        build_context = base / settings.pop("build_context", "vespa-deploy")

        return cls(
            command=args.command,
            force_gpu=args.force_gpu,
            force_cpu=args.force_cpu,
            verbose=args.verbose,
            data_dir=data_dir,
            build_context=build_context,
            env_file=base / ENV_FILE,
            env_template=base / ENV_TEMPLATE_FILE,
            settings_file=settings_path,
            **settings,
        )
