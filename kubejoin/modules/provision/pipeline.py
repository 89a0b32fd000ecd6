"""Node provisioning pipeline.

Runs the ordered steps against a NodeHost. The pipeline stops at the first
failing step and does not roll back: the recovery path is to fix the cause and
run the same command again, which skips every step already in place.
"""

import logging
import platform
import time
from typing import Callable, List, Optional, Tuple

from ...config import Config
from ...errors import ProvisioningError
from ..enroll.bundle import EnrollmentBundle
from .host import NodeHost
from .models import NodePaths, ProvisionContext, ProvisioningStep, StepResult, StepStatus
from .steps import default_steps

logger = logging.getLogger("kubejoin.provision.pipeline")

_ARCH_ALIASES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'ppc64le': 'ppc64le',
    's390x': 's390x',
}


def detect_arch() -> str:
    """Release architecture name for this machine."""
    if Config.ARCH:
        return Config.ARCH
    machine = platform.machine().lower()
    if machine not in _ARCH_ALIASES:
        raise ProvisioningError(f"Unsupported machine architecture: {machine}", phase="preflight")
    return _ARCH_ALIASES[machine]


def detect_cgroup_driver(host: NodeHost) -> str:
    """``systemd`` when systemd manages the host, else ``cgroupfs``."""
    if Config.CGROUP_DRIVER:
        return Config.CGROUP_DRIVER
    return "systemd" if host.path("/run/systemd/system").is_dir() else "cgroupfs"


def detect_resolv_conf(host: NodeHost) -> str:
    """Use the systemd-resolved upstream file when present to avoid a DNS loop."""
    resolved = "/run/systemd/resolve/resolv.conf"
    return resolved if host.exists(resolved) else "/etc/resolv.conf"


class Provisioner:
    """Brings one node from an enrollment bundle to a running kubelet.

    Args:
        host: The node
        bundle: Enrollment bundle produced by the coordinator
        steps: Step list, defaults to ``default_steps()``
        paths: File layout, defaults to ``NodePaths()``
        sleep: Sleep function used while waiting for services
    """

    def __init__(
        self,
        host: NodeHost,
        bundle: EnrollmentBundle,
        steps: Optional[List[ProvisioningStep]] = None,
        paths: Optional[NodePaths] = None,
        sleep: Callable[[float], None] = time.sleep,
        arch: Optional[str] = None,
        cgroup_driver: Optional[str] = None,
    ):
        self.host = host
        self.bundle = bundle
        self.steps = steps if steps is not None else default_steps()
        self.paths = paths or NodePaths()
        self.sleep = sleep
        self.arch = arch
        self.cgroup_driver = cgroup_driver

    def context(self) -> ProvisionContext:
        return ProvisionContext(
            bundle=self.bundle,
            host=self.host,
            paths=self.paths,
            arch=self.arch or detect_arch(),
            cgroup_driver=self.cgroup_driver or detect_cgroup_driver(self.host),
            resolv_conf=detect_resolv_conf(self.host),
            sleep=self.sleep,
        )

    def plan(self) -> List[Tuple[str, bool]]:
        """Evaluate every step's check without applying anything."""
        ctx = self.context()
        plan = []
        for step in self.steps:
            try:
                satisfied = bool(step.check(ctx))
            except Exception as e:
                logger.debug(f"Check for {step.name} failed: {e}")
                satisfied = False
            plan.append((step.name, satisfied))
        return plan

    def _fail(self, step: ProvisioningStep, index: int, error: ProvisioningError) -> ProvisioningError:
        error.phase = step.name
        error.node = self.bundle.node_name
        logger.error(f"❌ [{index}/{len(self.steps)}] {step.name} failed: {error}")
        return error

    def run(self) -> List[StepResult]:
        """Run every step in order.

        Returns:
            One StepResult per step

        Raises:
            ProvisioningError: The first step failure, tagged with the step name
        """
        ctx = self.context()
        total = len(self.steps)
        results = []
        logger.info(
            f"🔧 Provisioning node {self.bundle.node_name} "
            f"(kubernetes={self.bundle.kubernetes_version}, containerd={self.bundle.containerd_version}, "
            f"cni={self.bundle.cni_version}, arch={ctx.arch}, cgroup driver={ctx.cgroup_driver})"
        )

        for index, step in enumerate(self.steps, start=1):
            started = time.monotonic()
            try:
                if step.check(ctx):
                    status = StepStatus.SKIPPED
                else:
                    step.apply(ctx)
                    ctx.changed = True
                    status = StepStatus.APPLIED
                if not step.verify(ctx):
                    message = f"{step.name} did not reach its desired state."
                    raise step.error(f"{message} {step.hint}".strip())
            except ProvisioningError as e:
                raise self._fail(step, index, e)
            except Exception as e:
                raise self._fail(step, index, step.error(str(e))) from e

            duration = time.monotonic() - started
            marker = "✅" if status == StepStatus.APPLIED else "⏭️ "
            logger.info(f"{marker} [{index}/{total}] {step.name}: {status.value} ({duration:.1f}s)")
            results.append(StepResult(name=step.name, status=status, duration=duration))

        logger.info(f"✅ Node {self.bundle.node_name} provisioned; kubelet is running.")
        return results
