"""Control-plane side node enrollment.

- discovery: cluster connection facts from the active kubeconfig context
- credentials: node key pair and CSR
- signing: CertificateSigningRequest submit / approve / poll
- bundle: the enrollment bundle handed to the node
- coordinator: runs the phases in order
"""

from .bundle import EnrollmentBundle
from .coordinator import EnrollmentCoordinator
from .credentials import build_key_material
from .discovery import discover_cluster_facts
from .models import ClusterFacts, KeyMaterial, NodeIdentity, SignedCredential, SigningState, VersionPins
from .signing import SigningCoordinator

__all__ = [
    'EnrollmentBundle',
    'EnrollmentCoordinator',
    'build_key_material',
    'discover_cluster_facts',
    'ClusterFacts',
    'KeyMaterial',
    'NodeIdentity',
    'SignedCredential',
    'SigningState',
    'VersionPins',
    'SigningCoordinator',
]
