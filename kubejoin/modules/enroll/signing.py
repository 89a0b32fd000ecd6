"""CertificateSigningRequest submission, approval and polling.

The record is named after the node. Only one record per node name may be
live at a time, so ``submit`` always deletes a leftover record from an
earlier run before creating a new one. Denied records are left in place so
an operator can read the reason.
"""

import base64
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ...config import Config
from ...errors import SigningDeniedError, SigningError, SigningTimeoutError
from ...utils import poll
from .credentials import CSR_USAGES
from .models import KeyMaterial, NodeIdentity, SignedCredential, SigningState

logger = logging.getLogger("kubejoin.enroll.signing")

APPROVAL_REASON = "KubejoinApproved"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

# spec.usages accepted by the built-in kube-controller-manager signers. Other
# signers get the usages matching the CSR extensions.
SIGNER_USAGES = {
    "kubernetes.io/kube-apiserver-client-kubelet": ["digital signature", "key encipherment", "client auth"],
    "kubernetes.io/kube-apiserver-client": ["digital signature", "key encipherment", "client auth"],
    "kubernetes.io/kubelet-serving": ["digital signature", "key encipherment", "server auth"],
}


def usages_for_signer(signer_name: str) -> List[str]:
    """Usage strings to request from ``signer_name``."""
    return list(SIGNER_USAGES.get(signer_name, CSR_USAGES))


def _reason(error) -> str:
    return getattr(error, "reason", None) or str(error)


def record_name(identity: NodeIdentity) -> str:
    """Name of the CertificateSigningRequest for ``identity``."""
    return identity.name


def _condition(record, kind: str):
    conditions = (record.status.conditions if record.status else None) or []
    for condition in conditions:
        if condition.type == kind and str(condition.status) != "False":
            return condition
    return None


def signing_state(record) -> SigningState:
    """Classify a CertificateSigningRequest object."""
    if record is None:
        return SigningState.ABSENT
    if _condition(record, "Denied"):
        return SigningState.DENIED
    if _condition(record, "Failed"):
        return SigningState.FAILED
    if record.status and record.status.certificate:
        return SigningState.SIGNED
    if _condition(record, "Approved"):
        return SigningState.APPROVED
    return SigningState.PENDING


class SigningCoordinator:
    """Drives one node CSR from submission to an issued certificate.

    Args:
        api: CertificatesV1Api (or a compatible fake)
        signer_name: signerName placed on the request
        attempts: Number of polls before giving up
        interval: Seconds between polls
        sleep: Sleep function, injectable for tests
        approve: Approve the request ourselves; False waits for an operator
    """

    def __init__(
        self,
        api,
        signer_name: Optional[str] = None,
        attempts: Optional[int] = None,
        interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        approve: bool = True,
    ):
        self.api = api
        self.signer_name = signer_name or Config.SIGNER_NAME
        self.attempts = attempts if attempts is not None else Config.SIGNING_ATTEMPTS
        self.interval = interval if interval is not None else Config.SIGNING_INTERVAL
        self.sleep = sleep
        self.approve_requests = approve
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    def _read(self, name: str):
        try:
            return self.api.read_certificate_signing_request(name)
        except (ApiException, HTTPError) as e:
            if getattr(e, "status", None) == 404:
                return None
            raise SigningError(f"Failed to read CSR {name}: {_reason(e)}", node=name) from e

    def _delete_stale(self, name: str) -> None:
        existing = self._read(name)
        if existing is None:
            return
        logger.info(f"🧹 Deleting stale CSR {name} ({signing_state(existing).value}) from a previous run")
        try:
            self.api.delete_certificate_signing_request(name)
        except (ApiException, HTTPError) as e:
            if getattr(e, "status", None) != 404:
                raise SigningError(f"Failed to delete stale CSR {name}: {_reason(e)}", node=name) from e

    def submit(self, identity: NodeIdentity, key_material: KeyMaterial) -> str:
        """Replace any previous record for the node with a fresh pending one."""
        name = record_name(identity)
        self._delete_stale(name)

        body = client.V1CertificateSigningRequest(
            api_version="certificates.k8s.io/v1",
            kind="CertificateSigningRequest",
            metadata=client.V1ObjectMeta(
                name=name,
                labels={MANAGED_BY_LABEL: "kubejoin", "kubejoin.io/node": identity.name},
            ),
            spec=client.V1CertificateSigningRequestSpec(
                request=base64.b64encode(key_material.csr_pem).decode("ascii"),
                signer_name=self.signer_name,
                usages=usages_for_signer(self.signer_name),
            ),
        )
        try:
            self.api.create_certificate_signing_request(body)
        except (ApiException, HTTPError) as e:
            raise SigningError(f"Failed to create CSR {name}: {_reason(e)}", node=name) from e
        logger.info(f"  [✓] Submitted CSR {name} (signer {self.signer_name})")
        return name

    def _raise_rejected(self, name: str, record) -> None:
        condition = _condition(record, "Denied") or _condition(record, "Failed")
        reason = getattr(condition, "reason", None) or "no reason given"
        message = getattr(condition, "message", None) or ""
        raise SigningDeniedError(
            f"CSR {name} was {signing_state(record).value}: {reason}"
            + (f" ({message})" if message else "")
            + f". Inspect it with: kubectl describe csr {name}",
            node=name,
        )

    def approve(self, name: str, _retry: bool = True) -> None:
        """Add an Approved condition through the approval subresource."""
        record = self._read(name)
        if record is None:
            raise SigningError(f"CSR {name} disappeared before approval", node=name)

        state = signing_state(record)
        if state in (SigningState.DENIED, SigningState.FAILED):
            self._raise_rejected(name, record)
        if state in (SigningState.APPROVED, SigningState.SIGNED):
            logger.info(f"  [✓] CSR {name} is already approved")
            return

        if record.status is None:
            record.status = client.V1CertificateSigningRequestStatus(conditions=[])
        record.status.conditions = list(record.status.conditions or [])
        record.status.conditions.append(client.V1CertificateSigningRequestCondition(
            type="Approved",
            status="True",
            reason=APPROVAL_REASON,
            message=f"Approved by kubejoin for node {name}",
            last_update_time=datetime.now(timezone.utc),
        ))
        try:
            self.api.replace_certificate_signing_request_approval(name, record)
        except (ApiException, HTTPError) as e:
            if getattr(e, "status", None) == 409 and _retry:
                logger.info(f"🔄 CSR {name} changed during approval, re-reading")
                return self.approve(name, _retry=False)
            raise SigningError(f"Failed to approve CSR {name}: {_reason(e)}", node=name) from e
        logger.info(f"  [✓] Approved CSR {name}")

    def wait_for_certificate(self, name: str) -> SignedCredential:
        """Poll until the certificate is issued, the request is rejected, or the bound is hit."""
        logger.info(
            f"⏳ Waiting for certificate for {name} "
            f"(up to {self.attempts} checks every {self.interval:g}s)"
        )

        def probe() -> Optional[bytes]:
            record = self._read(name)
            if record is None:
                raise SigningError(f"CSR {name} was deleted while waiting for a certificate", node=name)
            state = signing_state(record)
            if state in (SigningState.DENIED, SigningState.FAILED):
                self._raise_rejected(name, record)
            if state == SigningState.SIGNED:
                return record.status.certificate
            return None

        certificate = poll(probe, self.attempts, self.interval, self.sleep, f"CSR {name} to be signed")
        if not certificate:
            raise SigningTimeoutError(
                f"No certificate issued for node {name} after {self.attempts} checks "
                f"at {self.interval:g}s intervals. Inspect the request and any denial reason with: "
                f"kubectl describe csr {name}",
                node=name,
            )

        if isinstance(certificate, bytes):
            pem = certificate if certificate.startswith(b"-----BEGIN") else base64.b64decode(certificate)
        else:
            pem = base64.b64decode(certificate)
        logger.info(f"  [✓] Certificate issued for {name}")
        return SignedCredential(certificate_pem=pem)

    def sign(self, identity: NodeIdentity, key_material: KeyMaterial) -> SignedCredential:
        """Submit, approve and wait. The full init -> signed transition."""
        name = self.submit(identity, key_material)
        if self.approve_requests:
            self.approve(name)
        else:
            logger.info(f"👉 Manual approval requested. Run: kubectl certificate approve {name}")
        return self.wait_for_certificate(name)
