"""Pytest configuration: a scripted stand-in for the Docker CLI."""

import json
import logging
import shutil
import subprocess

import pytest

import deploy
from capability_probe import CapabilityProbe
from deploy import VespaDeploymentManager, parse_args
from deploy_config import DeployConfig


class FakeDocker:
    """Answers ``subprocess.run`` calls the way the Docker CLI would.

    ``containers`` maps container name -> running flag. Every call is
    recorded in ``calls`` in order.
    """

    def __init__(self):
        self.calls = []
        self.containers = {}
        self.inspect = None
        self.failing = set()
        self.failure_code = 1
        self.binaries = {"docker", "docker-compose"}
        self.compose_plugin = True

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.binaries else None

    def run(self, cmd, check=False, capture_output=False, text=True, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] not in self.binaries:
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        returncode, stdout = self._respond(cmd)
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, output=stdout, stderr="boom")
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def commands(self, subcommand):
        return [c for c in self.calls if c[0] == "docker" and len(c) > 1 and c[1] == subcommand]

    def _respond(self, cmd):
        if cmd[0] == "docker-compose":
            return 0, "docker-compose version 1.29.2\n"

        subcommand = cmd[1]
        if subcommand in self.failing:
            return self.failure_code, ""
        if cmd[1:3] == ["compose", "version"]:
            return (0, "Docker Compose version v2.27.0\n") if self.compose_plugin else (1, "")

        if subcommand == "ps" and "--filter" in cmd:
            return 0, "NAMES     STATUS        PORTS\nvespa     Up 2 minutes  0.0.0.0:8080->8080/tcp\n"
        if subcommand == "ps":
            include_stopped = "-a" in cmd
            names = [n for n, running in self.containers.items() if running or include_stopped]
            return 0, "".join(f"{n}\n" for n in names)
        if subcommand == "inspect":
            if self.inspect is None:
                return 1, "[]\n"
            return 0, json.dumps([self.inspect])

        if subcommand == "run" and "-d" in cmd:
            name = cmd[cmd.index("--name") + 1]
            key, _, value = cmd[cmd.index("--label") + 1].partition("=")
            self.containers[name] = True
            self.inspect = {"Name": f"/{name}", "Config": {"Labels": {key: value}}, "HostConfig": {}}
        elif subcommand == "stop":
            self.containers[cmd[2]] = False
        elif subcommand == "rm":
            self.containers.pop(cmd[2], None)
            self.inspect = None
        return 0, ""


class FakeProbe(CapabilityProbe):
    def __init__(self, gpu=False, runtime=False, apple_silicon=False):
        self.gpu = gpu
        self.runtime = runtime
        self.apple_silicon = apple_silicon
        self.calls = []

    def has_gpu(self):
        self.calls.append("has_gpu")
        return self.gpu

    def runtime_supports_gpu(self):
        self.calls.append("runtime_supports_gpu")
        return self.runtime

    def is_apple_silicon(self):
        self.calls.append("is_apple_silicon")
        return self.apple_silicon


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch, caplog):
    """Run every test from an empty directory with captured INFO logs."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("VESPA_DATA_DIR", raising=False)
    monkeypatch.delenv("VESPA_DEPLOY_CONFIG", raising=False)
    # Keep pytest's capture handler on the root logger.
    monkeypatch.setattr(deploy, "configure_logging", lambda *args, **kwargs: None)
    caplog.set_level(logging.INFO)


@pytest.fixture(name="docker")
def docker_fixture(monkeypatch):
    fake = FakeDocker()
    monkeypatch.setattr(subprocess, "run", fake.run)
    monkeypatch.setattr(shutil, "which", fake.which)
    monkeypatch.setattr(deploy.time, "sleep", lambda seconds: fake.calls.append(["sleep", seconds]))
    return fake


@pytest.fixture(name="build_context")
def build_context_fixture(tmp_path):
    context = tmp_path / "vespa-deploy"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM vespaengine/vespa:8\n")
    return context


@pytest.fixture(name="make_config")
def make_config_fixture(tmp_path):
    def _make(*argv, environ=None):
        args = parse_args(list(argv) or ["start"])
        return DeployConfig.from_args(args, environ=environ or {}, cwd=tmp_path)

    return _make


@pytest.fixture(name="probe")
def probe_fixture():
    return FakeProbe()


@pytest.fixture(name="manager")
def manager_fixture(make_config, probe):
    return VespaDeploymentManager(make_config("start"), probe=probe)
