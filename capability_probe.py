"""GPU capability detection for the Vespa container."""

import logging
import platform
import shutil
import subprocess
from abc import ABC, abstractmethod
from enum import Enum

from deploy_logging import INFO, OK, STEP, paint

log = logging.getLogger(__name__)


class DeploymentMode(str, Enum):
    GPU = "gpu"
    CPU = "cpu"

    @property
    def label(self):
        return "GPU-accelerated" if self is DeploymentMode.GPU else "CPU-only"


class CapabilityProbe(ABC):
    """What the host can offer a GPU container."""

    @abstractmethod
    def has_gpu(self) -> bool:
        """True when an NVIDIA GPU is present and ``nvidia-smi`` works."""

    @abstractmethod
    def runtime_supports_gpu(self) -> bool:
        """True when Docker reports an NVIDIA runtime."""

    def is_apple_silicon(self) -> bool:
        return platform.machine() == "arm64" and platform.system() == "Darwin"


class ShellCapabilityProbe(CapabilityProbe):
    """Answers by shelling out to ``nvidia-smi`` and ``docker info``."""

    def has_gpu(self):
        if shutil.which("nvidia-smi") is None:
            log.debug("nvidia-smi not found on PATH")
            return False
        try:
            result = subprocess.run(["nvidia-smi"], capture_output=True, text=True, check=False)
        except OSError as e:
            log.debug("nvidia-smi could not be executed: %s", e)
            return False
        return result.returncode == 0

    def runtime_supports_gpu(self):
        try:
            result = subprocess.run(["docker", "info"], capture_output=True, text=True, check=False)
        except OSError as e:
            log.debug("docker info could not be executed: %s", e)
            return False
        if result.returncode != 0:
            return False
        return "nvidia" in result.stdout.lower()


def resolve_mode(force_gpu, force_cpu, probe):
    """Pick GPU or CPU mode. Explicit flags win over detection, GPU flag first."""
    if force_gpu:
        log.info(paint(STEP, "GPU mode forced via --force-gpu flag"))
        return DeploymentMode.GPU

    if force_cpu:
        log.info(paint(STEP, "CPU-only mode forced via --force-cpu flag"))
        return DeploymentMode.CPU

    log.info(paint(STEP, "🔍 Detecting GPU support..."))

    if probe.has_gpu():
        log.info(paint(OK, "✓ NVIDIA GPU detected"))
        if probe.runtime_supports_gpu():
            log.info(paint(OK, "✓ Docker GPU runtime detected"))
            return DeploymentMode.GPU
        log.warning(paint(STEP, "⚠ WARNING: NVIDIA GPU found but Docker GPU runtime not available"))
        log.info(paint(INFO, "ℹ INFO: Install NVIDIA Container Toolkit for GPU acceleration"))
        return DeploymentMode.CPU

    if probe.is_apple_silicon():
        log.info(paint(INFO, "ℹ INFO: Apple Silicon detected - using CPU-only mode"))
        return DeploymentMode.CPU

    log.info(paint(INFO, "ℹ INFO: No compatible GPU detected - using CPU-only mode"))
    return DeploymentMode.CPU


__all__ = [
    "CapabilityProbe",
    "DeploymentMode",
    "ShellCapabilityProbe",
    "resolve_mode",
]
