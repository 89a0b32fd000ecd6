"""Data models for node enrollment."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ...config import Config
from ...utils.normalize import normalize_version, validate_node_name

NODE_GROUP = "system:nodes"
NODE_USER_PREFIX = "system:node:"


class SigningState(str, Enum):
    """Lifecycle of a CertificateSigningRequest as seen by the coordinator."""
    ABSENT = 'absent'
    PENDING = 'pending'
    APPROVED = 'approved'
    DENIED = 'denied'
    FAILED = 'failed'
    SIGNED = 'signed'


@dataclass(frozen=True)
class VersionPins:
    """Component versions installed on the node, stored without a leading 'v'."""
    kubernetes: str = field(default_factory=lambda: Config.KUBERNETES_VERSION)
    containerd: str = field(default_factory=lambda: Config.CONTAINERD_VERSION)
    cni: str = field(default_factory=lambda: Config.CNI_VERSION)

    def __post_init__(self):
        for name in ('kubernetes', 'containerd', 'cni'):
            object.__setattr__(self, name, normalize_version(getattr(self, name)))

    @classmethod
    def from_options(
        cls,
        kubernetes: Optional[str] = None,
        containerd: Optional[str] = None,
        cni: Optional[str] = None,
    ) -> 'VersionPins':
        """Build pins from optional CLI values, falling back to configured defaults."""
        return cls(
            kubernetes=kubernetes or Config.KUBERNETES_VERSION,
            containerd=containerd or Config.CONTAINERD_VERSION,
            cni=cni or Config.CNI_VERSION,
        )


@dataclass(frozen=True)
class NodeIdentity:
    """The node being enrolled."""
    name: str
    versions: VersionPins = field(default_factory=VersionPins)

    def __post_init__(self):
        validate_node_name(self.name)

    @property
    def common_name(self) -> str:
        return f"{NODE_USER_PREFIX}{self.name}"

    @property
    def group(self) -> str:
        return NODE_GROUP


@dataclass(frozen=True)
class ClusterFacts:
    """Connection facts discovered from the active kubeconfig context."""
    api_server_url: str
    ca_bundle: bytes
    dns_address: str
    server_version: Optional[str] = None


@dataclass(frozen=True)
class KeyMaterial:
    """Private key and CSR, PEM encoded. Held in memory only."""
    private_key_pem: bytes = field(repr=False)
    csr_pem: bytes


@dataclass(frozen=True)
class SignedCredential:
    """Certificate issued by the cluster CA, PEM encoded."""
    certificate_pem: bytes
