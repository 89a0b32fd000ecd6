"""Control-plane side enrollment run.

Phases run strictly in order: discovery, credentials, signing, bundle. A
discovery failure therefore stops the run before any key is generated.
"""

import logging
import re
import time
from typing import Callable, Optional

from ...errors import BundleError, KubejoinError
from ...utils.kube import KubeContext
from ...utils.normalize import validate_node_name
from .bundle import EnrollmentBundle
from .credentials import build_key_material
from .discovery import discover_cluster_facts
from .models import NodeIdentity, VersionPins
from .signing import SigningCoordinator

logger = logging.getLogger("kubejoin.enroll.coordinator")

_RELEASE = re.compile(r"^v?(\d+\.\d+\.\d+)")


def release_from_server_version(git_version: Optional[str]) -> Optional[str]:
    """Reduce a server gitVersion like ``v1.28.3+k3s1`` to ``1.28.3``."""
    if not git_version:
        return None
    match = _RELEASE.match(git_version.strip())
    return match.group(1) if match else None


class EnrollmentCoordinator:
    """Runs one enrollment for one node name.

    Args:
        context: Active kubeconfig context
        core_api: CoreV1Api for DNS discovery
        certificates_api: CertificatesV1Api for the signing request
        version_api: Optional VersionApi to default the Kubernetes version
        strict_dns: Fail when the DNS address cannot be discovered
        approve: Approve the CSR automatically
        attempts: Signing poll attempts
        interval: Signing poll interval
        sleep: Sleep function used by the poll loop
    """

    def __init__(
        self,
        context: KubeContext,
        core_api,
        certificates_api,
        version_api=None,
        strict_dns: Optional[bool] = None,
        approve: bool = True,
        attempts: Optional[int] = None,
        interval: Optional[float] = None,
        signer_name: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.core_api = core_api
        self.version_api = version_api
        self.strict_dns = strict_dns
        self.signing = SigningCoordinator(
            certificates_api,
            signer_name=signer_name,
            attempts=attempts,
            interval=interval,
            sleep=sleep,
            approve=approve,
        )

    def enroll(
        self,
        name: str,
        kubernetes_version: Optional[str] = None,
        containerd_version: Optional[str] = None,
        cni_version: Optional[str] = None,
    ) -> EnrollmentBundle:
        """Produce a signed enrollment bundle for ``name``.

        Raises:
            KubejoinError: Any failure, tagged with the phase it happened in
        """
        validate_node_name(name)
        logger.info(f"--- Preparing arguments for worker node: {name} ---")
        facts = discover_cluster_facts(
            self.context, self.core_api, self.version_api, strict_dns=self.strict_dns,
        )

        if not kubernetes_version:
            kubernetes_version = release_from_server_version(facts.server_version)
            if kubernetes_version:
                logger.info(f"ℹ️  Pinning Kubernetes {kubernetes_version} to match the API server")

        identity = NodeIdentity(
            name=name,
            versions=VersionPins.from_options(kubernetes_version, containerd_version, cni_version),
        )

        key_material = build_key_material(identity)
        try:
            credential = self.signing.sign(identity, key_material)
            try:
                bundle = EnrollmentBundle.from_enrollment(identity, facts, key_material, credential)
            except ValueError as e:
                raise BundleError(f"Failed to assemble bundle for {name}: {e}", node=name) from e
        except KubejoinError as e:
            if e.node is None:
                e.node = name
            raise

        logger.info(
            f"✅ Node {name} enrolled: kubernetes={identity.versions.kubernetes} "
            f"containerd={identity.versions.containerd} cni={identity.versions.cni}"
        )
        return bundle
