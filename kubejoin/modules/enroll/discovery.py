"""Cluster fact discovery.

Reads the API server endpoint and CA bundle from the active kubeconfig context
and asks the cluster for the DNS service address.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ...config import Config
from ...errors import DiscoveryError
from ...utils.kube import KubeContext
from .models import ClusterFacts

logger = logging.getLogger("kubejoin.enroll.discovery")

PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


def _read_ca_bundle(context: KubeContext) -> bytes:
    cluster = context.cluster
    inline = cluster.get("certificate-authority-data")
    if inline:
        try:
            data = base64.b64decode(inline, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DiscoveryError("ca", f"certificate-authority-data is not valid base64: {e}") from e
        source = "certificate-authority-data"
    elif cluster.get("certificate-authority"):
        path = Path(cluster["certificate-authority"]).expanduser()
        if not path.is_absolute():
            path = context.base_dir / path
        try:
            data = path.read_bytes()
        except OSError as e:
            raise DiscoveryError("ca", f"cannot read certificate-authority file {path}: {e}") from e
        source = str(path)
    else:
        raise DiscoveryError(
            "ca",
            f"context '{context.name}' has neither certificate-authority-data nor certificate-authority",
        )

    if PEM_CERT_MARKER not in data:
        raise DiscoveryError("ca", f"{source} does not contain a PEM certificate")
    logger.info(f"  [✓] Found cluster CA certificate ({source})")
    return data


def _discover_dns_address(core_api, strict: bool, default: str) -> str:
    try:
        service = core_api.read_namespaced_service(Config.DNS_SERVICE, Config.DNS_NAMESPACE)
        address = getattr(service.spec, "cluster_ip", None)
    except (ApiException, HTTPError) as e:
        address = None
        reason = getattr(e, "reason", None) or str(e)
    else:
        reason = "service has no clusterIP"

    if address and address != "None":
        logger.info(f"  [✓] Cluster DNS IP: {address}")
        return address

    if strict:
        raise DiscoveryError(
            "dns",
            f"cannot read {Config.DNS_NAMESPACE}/{Config.DNS_SERVICE} ({reason}) and strict DNS is enabled",
        )
    logger.warning(
        f"⚠️  Could not determine {Config.DNS_SERVICE} service IP ({reason}). Using default {default}. "
        "Edit /var/lib/kubelet/kubelet-config.yaml on the node if this is incorrect."
    )
    return default


def _probe_server_version(version_api) -> Optional[str]:
    if version_api is None:
        return None
    try:
        return version_api.get_code().git_version
    except (ApiException, HTTPError) as e:
        logger.debug(f"Server version probe failed: {e}")
        return None


def discover_cluster_facts(
    context: KubeContext,
    core_api,
    version_api=None,
    strict_dns: Optional[bool] = None,
    default_dns: Optional[str] = None,
) -> ClusterFacts:
    """Discover everything the node needs to reach and trust the API server.

    Args:
        context: Active kubeconfig context
        core_api: CoreV1Api used for the DNS service lookup
        version_api: Optional VersionApi used to learn the server version
        strict_dns: Fail instead of falling back when DNS lookup fails
        default_dns: Fallback DNS address

    Returns:
        ClusterFacts

    Raises:
        DiscoveryError: If the endpoint is missing or not https, the CA is missing, or DNS lookup fails in strict mode
    """
    strict = Config.STRICT_DNS if strict_dns is None else strict_dns
    default = default_dns or Config.DEFAULT_DNS
    logger.info(f"--> Discovering cluster information from context '{context.name}'...")

    server = (context.cluster.get("server") or "").strip()
    if not server:
        raise DiscoveryError("endpoint", f"context '{context.name}' has no API server URL")
    if not server.startswith("https://"):
        raise DiscoveryError("endpoint", f"API server URL {server} must use https://")
    logger.info(f"  [✓] API Server URL: {server}")

    ca_bundle = _read_ca_bundle(context)
    dns_address = _discover_dns_address(core_api, strict, default)
    server_version = _probe_server_version(version_api)
    if server_version:
        logger.info(f"  [✓] API server version: {server_version}")

    return ClusterFacts(
        api_server_url=server,
        ca_bundle=ca_bundle,
        dns_address=dns_address,
        server_version=server_version,
    )
