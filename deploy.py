#!/usr/bin/env python
import argparse
import json
import logging
import shutil
import subprocess
import sys
import time

from capability_probe import DeploymentMode, ShellCapabilityProbe, resolve_mode
from deploy_config import DATA_DIR_ENV_VAR, CONFIG_ENV_VAR, DeployConfig
from deploy_errors import (
    ConfigError,
    DeployError,
    NotRunningError,
    RuntimeUnavailableError,
    UsageError,
)
from deploy_logging import FAIL, INFO, OK, STEP, configure_logging, paint

log = logging.getLogger(__name__)

COMMANDS = ("start", "stop", "restart", "logs", "status", "cleanup", "help")
# Commands that exit 0 whatever happens.
NEVER_FAILING_COMMANDS = ("stop", "status")

# Container label holding the mode chosen at start time.
MODE_LABEL = "vespa.deploy.mode"
DIR_PERMISSIONS = 0o755

_HELP_EPILOG = f"""\
Commands:
  start              Start Vespa service
  stop               Stop Vespa service
  restart            Restart Vespa service
  logs               Show Vespa logs
  status             Show Vespa status
  cleanup            Clean up old containers and images (prunes ALL unused
                     Docker containers, images and volumes on this host)
  help               Show this help message

Environment Variables:
  {DATA_DIR_ENV_VAR}     Data directory path (default: ./data)
                     Example: {DATA_DIR_ENV_VAR}=../vespa-data ./deploy.py start
  {CONFIG_ENV_VAR} YAML settings file (default: vespa-deploy.yml)

Examples:
  %(prog)s start           # Start Vespa (auto-detect GPU/CPU)
  %(prog)s start --force-cpu    # Force CPU-only mode
  %(prog)s logs            # Show Vespa logs
  %(prog)s status          # Check Vespa status
  {DATA_DIR_ENV_VAR}=../vespa-data %(prog)s start  # Use existing data directory
"""


class DeployArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(message)


def build_parser():
    parser = DeployArgumentParser(
        prog="deploy.py",
        usage="%(prog)s [COMMAND] [OPTIONS]",
        description="Manage the Vespa search engine container with GPU/CPU support.",
        epilog=_HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument("command", nargs="?", metavar="COMMAND", help="One of the commands below.")
    parser.add_argument(
        "--force-gpu",
        action="store_true",
        help="Force GPU mode even if GPU not detected",
    )
    parser.add_argument(
        "--force-cpu",
        action="store_true",
        help="Force CPU-only mode even if GPU detected",
    )
    parser.add_argument(
        "--verbose",
        "--debug",
        dest="verbose",
        action="store_true",
        help="Enable detailed debug logging.",
    )
    parser.add_argument("-h", "--help", dest="show_help", action="store_true", help="Show this help message")
    return parser


def parse_args(argv, parser=None):
    """Parses and validates argv. Raises UsageError for unknown commands or flags."""
    parser = parser or build_parser()
    args = parser.parse_args(argv)

    if args.show_help or not args.command:
        args.command = "help"
    if args.command not in COMMANDS:
        raise UsageError(f"Unknown command: {args.command}")

    log.debug("Parsed arguments: %s", args)
    return args


class VespaDeploymentManager:
    """
    Runs the Vespa container lifecycle (start/stop/restart/logs/status/cleanup)
    through the Docker CLI. Docker is the only source of truth for container
    state: every check re-queries it.
    """

    def __init__(self, config, probe=None):
        self.config = config
        self.probe = probe or ShellCapabilityProbe()
        self.log = log
        self.log.debug("VespaDeploymentManager initialized with config: %s", config)

    # --- Core Docker/System Command Execution ---
    def _run_command(
        self,
        cmd_list,
        check=True,
        capture_output=False,
        text=True,
        suppress_logs=False,
        **kwargs,
    ):
        """Helper method to run shell commands using subprocess."""
        if not suppress_logs:
            self.log.info("Running command: %s", " ".join(cmd_list))
        try:
            result = subprocess.run(
                cmd_list,
                check=check,
                capture_output=capture_output,
                text=text,
                **kwargs,
            )
        except subprocess.CalledProcessError as e:
            self.log.error(f"Command failed: {' '.join(cmd_list)}")
            self.log.error(f"Return Code: {e.returncode}")
            if e.stdout:
                self.log.error("STDOUT:\n%s", e.stdout.strip())
            if e.stderr:
                self.log.error("STDERR:\n%s", e.stderr.strip())
            raise
        if not suppress_logs:
            self.log.debug("Command finished: %s (rc=%s)", " ".join(cmd_list), result.returncode)
            if capture_output and result.stderr and result.stderr.strip():
                self.log.debug("Command stderr:\n%s", result.stderr.strip())
        return result

    def _try_command(self, cmd_list, **kwargs):
        """Runs a best-effort command. Returns None when the binary is missing."""
        try:
            return self._run_command(cmd_list, check=False, **kwargs)
        except OSError as e:
            self.log.warning(f"Could not run {cmd_list[0]}: {e}")
            return None

    # --- Container queries ---
    def _container_names(self, include_stopped=False):
        cmd = ["docker", "ps", "--format", "{{.Names}}"]
        if include_stopped:
            cmd.insert(2, "-a")
        result = self._try_command(cmd, capture_output=True, suppress_logs=True)
        if result is None or result.returncode != 0:
            return set()
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def _container_exists(self):
        return self.config.container_name in self._container_names(include_stopped=True)

    def _is_container_running(self):
        return self.config.container_name in self._container_names()

    def _inspect_container(self):
        """Returns the ``docker inspect`` record for the container, or None."""
        result = self._try_command(
            ["docker", "inspect", self.config.container_name],
            capture_output=True,
            suppress_logs=True,
        )
        if result is None or result.returncode != 0 or not result.stdout.strip():
            return None
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            self.log.debug(f"Unreadable docker inspect output: {e}")
            return None
        if isinstance(payload, list):
            return payload[0] if payload else None
        return payload

    # --- Runtime Command Resolution ---
    def _get_docker_compose_cmd(self):
        """Returns the compose command prefix, plugin form first."""
        candidates = [["docker", "compose"], ["docker-compose"]]
        for candidate in candidates:
            if shutil.which(candidate[0]) is None:
                self.log.debug(f"'{candidate[0]}' not found on PATH")
                continue
            result = self._try_command(candidate + ["version"], capture_output=True, suppress_logs=True)
            if result is not None and result.returncode == 0:
                self.log.debug("Using compose command: %s", " ".join(candidate))
                return candidate
        raise RuntimeUnavailableError("Neither 'docker-compose' nor 'docker compose' is available")

    # --- Environment Setup ---
    def setup_environment(self):
        """Creates the data directory tree and the .env file. Safe to repeat."""
        cfg = self.config
        self.log.info(paint(STEP, "⚙ Setting up Vespa environment..."))

        self.log.info("  📁 Creating Vespa data directories...")
        for directory in (cfg.vespa_data_dir, cfg.vespa_models_dir, cfg.vespa_tmp_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self.log.info("  🔒 Setting up permissions...")
        for directory in (cfg.data_dir, cfg.vespa_data_dir, cfg.vespa_models_dir, cfg.vespa_tmp_dir):
            try:
                directory.chmod(DIR_PERMISSIONS)
            except OSError as e:
                # Often owned by the container user from a previous run.
                self.log.debug(f"chmod {directory} skipped: {e}")

        if not cfg.env_file.exists() and cfg.env_template.is_file():
            self.log.info(f"  📄 Copying {cfg.env_template.name} to {cfg.env_file.name}...")
            shutil.copyfile(cfg.env_template, cfg.env_file)

        self.log.info(paint(OK, "✓ Environment setup completed"))

    def setup_permissions(self):
        """Chowns the mounted directories to the Vespa service user via a throwaway container."""
        cfg = self.config
        self.log.info(paint(STEP, "🔒 Setting Vespa directory permissions..."))
        owner = f"{cfg.service_uid}:{cfg.service_gid}"

        for directory in (cfg.vespa_data_dir, cfg.vespa_models_dir):
            result = self._try_command(
                [
                    "docker", "run", "--rm",
                    "-v", f"{directory}:/data",
                    cfg.permission_image,
                    "chown", "-R", owner, "/data",
                ],
                capture_output=True,
            )
            if result is not None and result.returncode != 0:
                self.log.warning(
                    paint(STEP, f"⚠ Could not set owner {owner} on {directory} (exit {result.returncode}), continuing")
                )

        self.log.info(paint(OK, "✓ Permissions configured"))

    # --- Lifecycle ---
    def _select_dockerfile(self, mode):
        cfg = self.config
        if mode is DeploymentMode.GPU:
            gpu_dockerfile = cfg.build_context / cfg.gpu_dockerfile
            if gpu_dockerfile.is_file():
                return gpu_dockerfile
            self.log.debug(f"{gpu_dockerfile} not found, building GPU mode from {cfg.cpu_dockerfile}")
        return cfg.build_context / cfg.cpu_dockerfile

    def _docker_run_cmd(self, mode):
        cfg = self.config
        cmd = ["docker", "run", "-d", "--name", cfg.container_name]
        if mode is DeploymentMode.GPU:
            cmd += ["--gpus", "all"]
        cmd += ["--label", f"{MODE_LABEL}={mode.value}"]
        for host_port, container_port in cfg.ports:
            cmd += ["-p", f"{host_port}:{container_port}"]
        for host_path, container_path in cfg.mounts:
            cmd += ["-v", f"{host_path}:{container_path}"]
        cmd.append(cfg.image)
        return cmd

    def start_vespa(self, mode):
        """Builds the image for ``mode`` and runs the container detached."""
        cfg = self.config
        if mode is DeploymentMode.GPU:
            self.log.info(paint(OK, "⚡ Using GPU-accelerated Vespa"))
        else:
            self.log.info(paint(INFO, "💻 Using CPU-only Vespa"))

        dockerfile = self._select_dockerfile(mode)
        self.log.info(f"  🔨 Building {mode.label} Vespa image...")
        self._run_command(["docker", "build", "-t", cfg.image, "-f", str(dockerfile), str(cfg.build_context)])
        self._run_command(self._docker_run_cmd(mode))

        self.log.info(paint(OK, "✓ Vespa service started"))

    def start(self):
        self.log.info(paint(STEP, "🚀 Starting Vespa service..."))
        self._get_docker_compose_cmd()
        mode = resolve_mode(self.config.force_gpu, self.config.force_cpu, self.probe)
        self.setup_environment()
        self.setup_permissions()
        self.start_vespa(mode)
        self.show_status()
        return mode

    def stop(self):
        """Stops and removes the container. Never fails."""
        name = self.config.container_name
        self.log.info(paint(STEP, "🛑 Stopping Vespa service..."))

        if not self._container_exists():
            self.log.info(paint(INFO, "ℹ Vespa service is not running"))
            return False

        for action in ("stop", "rm"):
            result = self._try_command(["docker", action, name], capture_output=True)
            if result is not None and result.returncode != 0:
                self.log.debug(f"docker {action} {name} returned {result.returncode}")
        self.log.info(paint(OK, "✓ Vespa service stopped"))
        return True

    def restart(self):
        self.stop()
        self.log.info(f"  ⏳ Waiting {self.config.restart_cooldown:g}s for ports to be released...")
        time.sleep(self.config.restart_cooldown)
        return self.start()

    def show_logs(self):
        """Follows the container logs until interrupted."""
        self.log.info(paint(STEP, "📋 Showing Vespa logs..."))
        if not self._is_container_running():
            raise NotRunningError("Vespa service is not running")
        self._run_command(["docker", "logs", "-f", self.config.container_name], check=False)

    def running_mode(self):
        """Mode of the running container, from its label or its GPU device requests."""
        info = self._inspect_container()
        return mode_from_inspect(info) if info else DeploymentMode.CPU

    def show_status(self):
        cfg = self.config
        self.log.info(paint(STEP, "📊 Vespa Service Status:"))

        if not self._is_container_running():
            self.log.info(paint(FAIL, "✗ Vespa service is not running"))
            self.log.info("  Start with: ./deploy.py start")
            return False

        self.log.info(paint(OK, "✓ Vespa is running"))
        self._run_command(
            [
                "docker", "ps",
                "--filter", f"name=^{cfg.container_name}$",
                "--format", "table {{.Names}}\t{{.Status}}\t{{.Ports}}",
            ],
            check=False,
            suppress_logs=True,
        )
        self.log.info(paint(STEP, "🌐 Access URLs:"))
        self.log.info(f"  • Vespa Config Server: http://localhost:{cfg.config_port}")
        self.log.info(f"  • Vespa Query API: http://localhost:{cfg.query_port}")

        if self.running_mode() is DeploymentMode.GPU:
            self.log.info(paint(OK, "  ⚡ Mode: GPU-accelerated"))
        else:
            self.log.info(paint(INFO, "  💻 Mode: CPU-only"))
        return True

    def cleanup(self):
        """Prunes unused Docker data host-wide, not only Vespa's."""
        self.log.info(paint(STEP, "🧹 Cleaning up old containers and images..."))
        self.log.warning(
            paint(STEP, "⚠ This prunes unused containers, images and volumes of ALL Docker workloads on this host.")
        )
        for cmd in (["docker", "system", "prune", "-f"], ["docker", "volume", "prune", "-f"]):
            result = self._try_command(cmd)
            if result is not None and result.returncode != 0:
                self.log.warning(f"'{' '.join(cmd)}' exited with {result.returncode}")
        self.log.info(paint(OK, "✓ Cleanup completed"))

    def run(self):
        """Main execution logic based on the configured command."""
        command = self.config.command
        if command == "start":
            self.start()
        elif command == "stop":
            self.stop()
        elif command == "restart":
            self.restart()
        elif command == "logs":
            self.show_logs()
        elif command == "status":
            self.show_status()
        elif command == "cleanup":
            self.cleanup()
        return 0


def mode_from_inspect(info):
    """Reads the deployment mode out of one ``docker inspect`` record."""
    labels = (info.get("Config") or {}).get("Labels") or {}
    recorded = labels.get(MODE_LABEL)
    if recorded in (DeploymentMode.GPU.value, DeploymentMode.CPU.value):
        return DeploymentMode(recorded)

    # Started by other means: look for a GPU device request.
    host_config = info.get("HostConfig") or {}
    for request in host_config.get("DeviceRequests") or []:
        for capabilities in request.get("Capabilities") or []:
            if "gpu" in capabilities:
                return DeploymentMode.GPU
    if "Gpus" in host_config:
        return DeploymentMode.GPU
    return DeploymentMode.CPU


def load_config(args):
    """Builds the DeployConfig. ``stop`` and ``status`` fall back to defaults on a bad settings file."""
    try:
        return DeployConfig.from_args(args)
    except ConfigError as e:
        if args.command not in NEVER_FAILING_COMMANDS:
            raise
        log.warning(paint(STEP, f"⚠ {e} Using built-in defaults."))
        return DeployConfig.from_args(args, use_settings_file=False)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()

    try:
        args = parse_args(argv, parser)
    except UsageError as e:
        configure_logging()
        log.error(paint(FAIL, f"✗ {e}"))
        parser.print_help()
        return e.exit_code

    configure_logging(args.verbose)
    if args.command == "help":
        parser.print_help()
        return 0

    try:
        config = load_config(args)
        return VespaDeploymentManager(config).run()
    except KeyboardInterrupt:
        log.info("\nOperation cancelled by user.")
        return 130
    except DeployError as e:
        log.error(paint(FAIL, f"✗ ERROR: {e}"))
        return e.exit_code
    except subprocess.CalledProcessError:
        # Logged within _run_command. Build/run failures always exit 1.
        return 1
    except FileNotFoundError as e:
        log.critical(f"Required command or file not found: {e}")
        return 1
    except Exception as e:
        log.critical("An unexpected error occurred: %s", e, exc_info=log.isEnabledFor(logging.DEBUG))
        return 1


if __name__ == "__main__":
    sys.exit(main())
