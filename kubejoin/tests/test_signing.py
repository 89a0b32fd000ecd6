import base64

import pytest
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from kubernetes import client
from urllib3.exceptions import MaxRetryError

from kubejoin.errors import SigningDeniedError, SigningError, SigningTimeoutError
from kubejoin.modules.enroll import NodeIdentity, SigningCoordinator, SigningState, build_key_material
from kubejoin.modules.enroll.credentials import CSR_USAGES
from kubejoin.modules.enroll.signing import signing_state, usages_for_signer


@pytest.fixture(scope="module")
def identity():
    return NodeIdentity("worker-1")


@pytest.fixture(scope="module")
def material(identity):
    return build_key_material(identity)


def test_sign_issues_certificate_for_the_csr_key(certificates_api, identity, material, no_sleep):
    coordinator = SigningCoordinator(certificates_api, sleep=no_sleep.sleep)
    credential = coordinator.sign(identity, material)

    cert = x509.load_pem_x509_certificate(credential.certificate_pem, default_backend())
    csr = x509.load_pem_x509_csr(material.csr_pem, default_backend())
    assert cert.public_key().public_numbers() == csr.public_key().public_numbers()
    assert signing_state(certificates_api.records["worker-1"]) == SigningState.SIGNED


def test_request_carries_signer_usages_and_labels(certificates_api, identity, material, no_sleep):
    SigningCoordinator(certificates_api, sleep=no_sleep.sleep).submit(identity, material)
    record = certificates_api.records["worker-1"]
    assert record.spec.signer_name == "kubernetes.io/kube-apiserver-client-kubelet"
    assert record.spec.usages == ["digital signature", "key encipherment", "client auth"]
    assert base64.b64decode(record.spec.request) == material.csr_pem
    assert record.metadata.labels["app.kubernetes.io/managed-by"] == "kubejoin"


def test_stale_record_is_deleted_before_create(certificates_api, identity, material, no_sleep):
    certificates_api.seed("worker-1")
    SigningCoordinator(certificates_api, sleep=no_sleep.sleep).sign(identity, material)

    mutations = [c for c in certificates_api.calls if c[0] in ("delete", "create")]
    assert mutations == [("delete", "worker-1"), ("create", "worker-1")]
    assert base64.b64decode(certificates_api.records["worker-1"].spec.request) == material.csr_pem


def test_stale_denied_record_is_replaced(certificates_api, identity, material, no_sleep):
    denied = client.V1CertificateSigningRequestCondition(type="Denied", status="True", reason="Old")
    certificates_api.seed("worker-1", conditions=[denied])
    credential = SigningCoordinator(certificates_api, sleep=no_sleep.sleep).sign(identity, material)
    assert credential.certificate_pem.startswith(b"-----BEGIN CERTIFICATE-----")


def test_no_delete_when_nothing_is_left_over(certificates_api, identity, material, no_sleep):
    SigningCoordinator(certificates_api, sleep=no_sleep.sleep).submit(identity, material)
    assert ("delete", "worker-1") not in certificates_api.calls


def test_denial_is_reported_and_record_kept(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(mode="deny")
    with pytest.raises(SigningDeniedError) as excinfo:
        SigningCoordinator(api, sleep=no_sleep.sleep).sign(identity, material)

    message = str(excinfo.value)
    assert "PolicyDenied" in message
    assert "kubectl describe csr worker-1" in message
    assert excinfo.value.phase == "signing"
    assert "worker-1" in api.records


def test_denial_while_waiting(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(mode="deny")
    coordinator = SigningCoordinator(api, sleep=no_sleep.sleep, approve=False)
    with pytest.raises(SigningDeniedError):
        coordinator.sign(identity, material)
    assert "worker-1" in api.records


def test_timeout_after_bounded_polls(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(mode="never")
    coordinator = SigningCoordinator(api, attempts=10, interval=1.0, sleep=no_sleep.sleep)
    with pytest.raises(SigningTimeoutError) as excinfo:
        coordinator.sign(identity, material)

    assert no_sleep.calls == [1.0] * 10
    assert "kubectl describe csr worker-1" in str(excinfo.value)
    assert not isinstance(excinfo.value, SigningDeniedError)


def test_polls_until_signed(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(sign_after=3)
    SigningCoordinator(api, attempts=10, interval=1.0, sleep=no_sleep.sleep).sign(identity, material)
    assert len(no_sleep.calls) == 3


def test_approval_conflict_is_retried_once(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(conflicts=1)
    SigningCoordinator(api, sleep=no_sleep.sleep).sign(identity, material)
    assert [c for c in api.calls if c[0] == "approve"] == [("approve", "worker-1")] * 2


def test_repeated_approval_conflict_is_fatal(make_certificates_api, identity, material, no_sleep):
    api = make_certificates_api(conflicts=2)
    with pytest.raises(SigningError):
        SigningCoordinator(api, sleep=no_sleep.sleep).sign(identity, material)


def test_approval_condition(certificates_api, identity, material, no_sleep):
    coordinator = SigningCoordinator(certificates_api, sleep=no_sleep.sleep)
    name = coordinator.submit(identity, material)
    coordinator.approve(name)

    conditions = certificates_api.records[name].status.conditions
    assert [(c.type, c.status, c.reason) for c in conditions] == [("Approved", "True", "KubejoinApproved")]

    # approving twice is a no-op
    coordinator.approve(name)
    assert len(certificates_api.records[name].status.conditions) == 1


def test_manual_approval_waits_for_operator(certificates_api, identity, material, no_sleep):
    coordinator = SigningCoordinator(certificates_api, attempts=3, interval=1.0, sleep=no_sleep.sleep, approve=False)
    with pytest.raises(SigningTimeoutError):
        coordinator.sign(identity, material)
    assert ("approve", "worker-1") not in certificates_api.calls


def test_manual_approval_picks_up_operator_approval(certificates_api, identity, material):
    def operator_approves(_seconds):
        record = certificates_api.records["worker-1"]
        if not record.status.conditions:
            record.status.conditions = [
                client.V1CertificateSigningRequestCondition(type="Approved", status="True", reason="Operator"),
            ]

    coordinator = SigningCoordinator(certificates_api, sleep=operator_approves, approve=False)
    credential = coordinator.sign(identity, material)
    assert credential.certificate_pem.startswith(b"-----BEGIN CERTIFICATE-----")


def test_signing_state_classification():
    def record(*conditions, certificate=None):
        return client.V1CertificateSigningRequest(
            spec=client.V1CertificateSigningRequestSpec(request="c3RhbGU=", signer_name="example.com/signer"),
            status=client.V1CertificateSigningRequestStatus(
                conditions=[client.V1CertificateSigningRequestCondition(type=t, status=s) for t, s in conditions],
                certificate=certificate,
            ),
        )

    assert signing_state(None) == SigningState.ABSENT
    assert signing_state(record()) == SigningState.PENDING
    assert signing_state(record(("Approved", "True"))) == SigningState.APPROVED
    assert signing_state(record(("Approved", "True"), certificate="c3RhbGU=")) == SigningState.SIGNED
    assert signing_state(record(("Denied", "True"))) == SigningState.DENIED
    assert signing_state(record(("Approved", "True"), ("Failed", "True"))) == SigningState.FAILED
    assert signing_state(record(("Approved", "False"))) == SigningState.PENDING


def test_attempts_must_be_positive(certificates_api):
    with pytest.raises(ValueError):
        SigningCoordinator(certificates_api, attempts=0)


@pytest.mark.parametrize("signer_name, expected", [
    ("kubernetes.io/kube-apiserver-client-kubelet", ["digital signature", "key encipherment", "client auth"]),
    ("kubernetes.io/kube-apiserver-client", ["digital signature", "key encipherment", "client auth"]),
    ("kubernetes.io/kubelet-serving", ["digital signature", "key encipherment", "server auth"]),
    ("example.com/node-signer", CSR_USAGES),
])
def test_usages_follow_the_signer(signer_name, expected):
    assert usages_for_signer(signer_name) == expected


def test_custom_signer_gets_the_csr_extension_usages(certificates_api, identity, material, no_sleep):
    coordinator = SigningCoordinator(certificates_api, signer_name="example.com/node-signer", sleep=no_sleep.sleep)
    coordinator.submit(identity, material)
    record = certificates_api.records["worker-1"]
    assert record.spec.signer_name == "example.com/node-signer"
    assert record.spec.usages == CSR_USAGES


def test_unreachable_api_is_a_signing_error(unreachable_certificates_api, identity, material, no_sleep):
    with pytest.raises(SigningError) as excinfo:
        SigningCoordinator(unreachable_certificates_api, sleep=no_sleep.sleep).sign(identity, material)

    assert excinfo.value.phase == "signing"
    assert excinfo.value.node == "worker-1"
    assert "connection refused" in str(excinfo.value)
    assert unreachable_certificates_api.calls == [("read", "worker-1")]


def test_transport_failure_during_approval(certificates_api, identity, material, no_sleep, monkeypatch):
    coordinator = SigningCoordinator(certificates_api, sleep=no_sleep.sleep)
    name = coordinator.submit(identity, material)

    def refuse(name, body):
        raise MaxRetryError(None, "/apis/certificates.k8s.io/v1", "connection reset")

    monkeypatch.setattr(certificates_api, "replace_certificate_signing_request_approval", refuse)
    with pytest.raises(SigningError, match="Failed to approve CSR worker-1: connection reset"):
        coordinator.approve(name)
