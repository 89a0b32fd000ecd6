"""Data models for the node provisioner."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Type

from ...errors import ProvisioningError
from ..enroll.bundle import EnrollmentBundle


class StepStatus(str, Enum):
    """Outcome of a provisioning step."""
    APPLIED = 'applied'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class NodePaths:
    """Fixed on-node locations. Re-runs overwrite these files in place."""
    cni_bin_dir: str = '/opt/cni/bin'
    cni_conf_dir: str = '/etc/cni/net.d'
    containerd_prefix: str = '/usr/local'
    containerd_config: str = '/etc/containerd/config.toml'
    containerd_unit: str = '/etc/systemd/system/containerd.service'
    runc_bin: str = '/usr/local/sbin/runc'
    bin_dir: str = '/usr/local/bin'
    ca_cert: str = '/var/lib/kubernetes/ca.crt'
    kubelet_dir: str = '/var/lib/kubelet'
    kubelet_kubeconfig: str = '/var/lib/kubelet/kubeconfig'
    kube_proxy_kubeconfig: str = '/var/lib/kube-proxy/kubeconfig'
    kubelet_config: str = '/var/lib/kubelet/kubelet-config.yaml'
    kubelet_unit: str = '/etc/systemd/system/kubelet.service'
    state_dir: str = '/var/lib/kubejoin'
    fstab: str = '/etc/fstab'
    modules_load: str = '/etc/modules-load.d/kubejoin.conf'
    sysctl_conf: str = '/etc/sysctl.d/99-kubejoin.conf'

    def node_key(self, node_name: str) -> str:
        return f"{self.kubelet_dir}/{node_name}.key"

    def node_cert(self, node_name: str) -> str:
        return f"{self.kubelet_dir}/{node_name}.crt"

    @property
    def cni_stamp(self) -> str:
        return f"{self.cni_bin_dir}/.kubejoin-version"

    @property
    def runtime_stamp(self) -> str:
        return f"{self.state_dir}/containerd.version"

    @property
    def binaries_stamp(self) -> str:
        return f"{self.state_dir}/kubernetes.version"


@dataclass
class ProvisionContext:
    """Everything a step may read. ``changed`` records whether an earlier step applied."""
    bundle: EnrollmentBundle
    host: 'NodeHost'
    paths: NodePaths
    arch: str
    cgroup_driver: str
    resolv_conf: str
    sleep: Callable[[float], None]
    changed: bool = False


@dataclass(frozen=True)
class ProvisioningStep:
    """One idempotent unit of the node pipeline.

    ``check`` returns True when the desired state is already in place, in which
    case ``apply`` is skipped. ``verify`` runs either way.
    """
    name: str
    check: Callable[[ProvisionContext], bool]
    apply: Callable[[ProvisionContext], None]
    verify: Callable[[ProvisionContext], bool]
    error: Type[ProvisioningError] = ProvisioningError
    hint: str = ''


@dataclass
class StepResult:
    name: str
    status: StepStatus
    duration: float = 0.0
