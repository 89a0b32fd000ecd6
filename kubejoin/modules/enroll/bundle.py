"""Enrollment bundle: the only thing handed from the coordinator to the node.

The bundle is rendered as a single ``kubejoin provision apply`` command line.
Binary values travel as single-line base64 and every value is shell quoted.
"""

import base64
import binascii
import shlex
from collections import OrderedDict
from typing import Dict

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ...config import Config
from ...errors import BundleError
from ...utils.normalize import normalize_version, validate_node_name
from .models import ClusterFacts, KeyMaterial, NodeIdentity, SignedCredential

DEFAULT_PROGRAM = "sudo kubejoin provision apply"

# bundle field -> command line flag, in emission order
FLAGS = OrderedDict([
    ("node_name", "--name"),
    ("api_server_url", "--api-url"),
    ("ca_cert_base64", "--ca-cert-base64"),
    ("node_key_base64", "--node-key-base64"),
    ("node_cert_base64", "--node-cert-base64"),
    ("cluster_dns_ip", "--cluster-dns-ip"),
    ("kubernetes_version", "--kubernetes-version"),
    ("containerd_version", "--containerd-version"),
    ("cni_version", "--cni-version"),
])

BINARY_FIELDS = ("ca_cert_base64", "node_key_base64", "node_cert_base64")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class EnrollmentBundle(BaseModel):
    """Everything the node provisioner needs, and nothing that requires the cluster API."""

    model_config = ConfigDict(validate_default=True, frozen=True)

    node_name: str
    api_server_url: str
    ca_cert_base64: str
    node_key_base64: str
    node_cert_base64: str
    cluster_dns_ip: str
    kubernetes_version: str = Config.KUBERNETES_VERSION
    containerd_version: str = Config.CONTAINERD_VERSION
    cni_version: str = Config.CNI_VERSION

    @field_validator("node_name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return validate_node_name(v)

    @field_validator("api_server_url")
    @classmethod
    def check_url(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("API server URL must start with https://")
        return v

    @field_validator("ca_cert_base64", "node_key_base64", "node_cert_base64")
    @classmethod
    def check_base64(cls, v: str) -> str:
        v = "".join(v.split())
        try:
            decoded = base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"not valid base64: {e}") from e
        if not decoded:
            raise ValueError("decodes to an empty value")
        return v

    @field_validator("cluster_dns_ip")
    @classmethod
    def check_dns(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cluster DNS address is required")
        return v.strip()

    @field_validator("kubernetes_version", "containerd_version", "cni_version")
    @classmethod
    def normalize_versions(cls, v: str) -> str:
        return normalize_version(v)

    @classmethod
    def from_enrollment(
        cls,
        identity: NodeIdentity,
        facts: ClusterFacts,
        key_material: KeyMaterial,
        credential: SignedCredential,
    ) -> 'EnrollmentBundle':
        """Close over the results of a successful signing run."""
        return cls(
            node_name=identity.name,
            api_server_url=facts.api_server_url,
            ca_cert_base64=_b64(facts.ca_bundle),
            node_key_base64=_b64(key_material.private_key_pem),
            node_cert_base64=_b64(credential.certificate_pem),
            cluster_dns_ip=facts.dns_address,
            kubernetes_version=identity.versions.kubernetes,
            containerd_version=identity.versions.containerd,
            cni_version=identity.versions.cni,
        )

    @classmethod
    def from_params(cls, **params) -> 'EnrollmentBundle':
        """Rebuild a bundle from provisioner options, turning validation errors into BundleError."""
        values = {k: v for k, v in params.items() if v is not None}
        try:
            return cls(**values)
        except ValidationError as e:
            problems = "; ".join(
                f"{FLAGS.get(str(err['loc'][0]), err['loc'][0])}: {err['msg']}" for err in e.errors()
            )
            raise BundleError(f"Invalid enrollment bundle: {problems}", node=values.get("node_name")) from e

    def decode(self, field: str) -> bytes:
        """Raw bytes of one of the base64 fields."""
        if field not in BINARY_FIELDS:
            raise KeyError(field)
        return base64.b64decode(getattr(self, field))

    def to_params(self) -> Dict[str, str]:
        """Ordered flag -> value mapping."""
        return OrderedDict((flag, getattr(self, name)) for name, flag in FLAGS.items())

    def to_command(self, program: str = DEFAULT_PROGRAM) -> str:
        """Render the single copy-pasteable invocation line."""
        parts = [program]
        for flag, value in self.to_params().items():
            parts.append(f"{flag} {shlex.quote(value)}")
        return " ".join(parts)
