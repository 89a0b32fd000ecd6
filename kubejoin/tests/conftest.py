import base64
import copy
import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from kubejoin.errors import CommandError
from kubejoin.modules.enroll import EnrollmentBundle, NodeIdentity, build_key_material
from kubejoin.modules.provision import NodeHost
from kubejoin.modules.provision.steps import REQUIRED_TOOLS
from kubejoin.utils.kube import KubeContext

API_URL = "https://10.0.0.1:6443"


class FakeCA:
    """Throwaway cluster CA able to sign node CSRs."""

    def __init__(self):
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048, backend=default_backend())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kubernetes")])
        now = datetime.datetime.now(datetime.timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256(), default_backend())
        )
        self.pem = self.cert.public_bytes(serialization.Encoding.PEM)

    def sign(self, csr_pem: bytes) -> bytes:
        csr = x509.load_pem_x509_csr(csr_pem, default_backend())
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .sign(self.key, hashes.SHA256(), default_backend())
        )
        return cert.public_bytes(serialization.Encoding.PEM)


class FakeCertificatesApi:
    """In-memory certificates.k8s.io API.

    ``mode``:
      - ``sign``: issue a certificate ``sign_after`` reads after approval
      - ``deny``: deny the request on the first read after submission
      - ``never``: never issue anything
    """

    def __init__(self, ca: FakeCA, mode: str = "sign", sign_after: int = 1, conflicts: int = 0):
        self.ca = ca
        self.mode = mode
        self.sign_after = sign_after
        self.conflicts = conflicts
        self.records = {}
        self.calls = []
        self._reads_since_approval = {}

    def _missing(self, name):
        return ApiException(status=404, reason=f"certificatesigningrequests {name} not found")

    def _progress(self, name):
        record = self.records[name]
        conditions = record.status.conditions or []
        if self.mode == "deny" and not any(c.type == "Denied" for c in conditions):
            conditions.append(client.V1CertificateSigningRequestCondition(
                type="Denied", status="True", reason="PolicyDenied", message="node name not allowed"))
            record.status.conditions = conditions
            return
        if self.mode != "sign" or record.status.certificate:
            return
        if any(c.type == "Approved" for c in conditions):
            reads = self._reads_since_approval.get(name, 0) + 1
            self._reads_since_approval[name] = reads
            if reads >= self.sign_after:
                pem = self.ca.sign(base64.b64decode(record.spec.request))
                record.status.certificate = base64.b64encode(pem).decode("ascii")

    def read_certificate_signing_request(self, name):
        self.calls.append(("read", name))
        if name not in self.records:
            raise self._missing(name)
        self._progress(name)
        return copy.deepcopy(self.records[name])

    def create_certificate_signing_request(self, body):
        name = body.metadata.name
        self.calls.append(("create", name))
        if name in self.records:
            raise ApiException(status=409, reason="AlreadyExists")
        record = copy.deepcopy(body)
        record.status = client.V1CertificateSigningRequestStatus(conditions=[])
        self.records[name] = record
        return copy.deepcopy(record)

    def delete_certificate_signing_request(self, name):
        self.calls.append(("delete", name))
        if name not in self.records:
            raise self._missing(name)
        del self.records[name]
        self._reads_since_approval.pop(name, None)

    def replace_certificate_signing_request_approval(self, name, body):
        self.calls.append(("approve", name))
        if self.conflicts:
            self.conflicts -= 1
            raise ApiException(status=409, reason="Conflict")
        if name not in self.records:
            raise self._missing(name)
        self.records[name].status.conditions = copy.deepcopy(body.status.conditions)
        return copy.deepcopy(self.records[name])

    def seed(self, name, conditions=None):
        """Leave a record behind as an earlier, interrupted run would."""
        self.records[name] = client.V1CertificateSigningRequest(
            metadata=client.V1ObjectMeta(name=name),
            spec=client.V1CertificateSigningRequestSpec(
                request=base64.b64encode(b"stale").decode("ascii"),
                signer_name="kubernetes.io/kube-apiserver-client-kubelet",
            ),
            status=client.V1CertificateSigningRequestStatus(conditions=conditions or []),
        )


class UnreachableCertificatesApi:
    """certificates.k8s.io API behind a dead connection."""

    def __init__(self):
        self.calls = []

    def _refused(self, action, name):
        self.calls.append((action, name))
        raise MaxRetryError(None, "/apis/certificates.k8s.io/v1/certificatesigningrequests", "connection refused")

    def read_certificate_signing_request(self, name):
        self._refused("read", name)

    def create_certificate_signing_request(self, body):
        self._refused("create", body.metadata.name)

    def delete_certificate_signing_request(self, name):
        self._refused("delete", name)

    def replace_certificate_signing_request_approval(self, name, body):
        self._refused("approve", name)


class FakeCoreApi:
    def __init__(self, cluster_ip="10.43.0.10", error=None):
        self.cluster_ip = cluster_ip
        self.error = error
        self.calls = []

    def read_namespaced_service(self, name, namespace):
        self.calls.append((namespace, name))
        if self.error:
            raise self.error
        return client.V1Service(spec=client.V1ServiceSpec(cluster_ip=self.cluster_ip))


class FakeVersionApi:
    def __init__(self, git_version="v1.28.3"):
        self.git_version = git_version

    def get_code(self):
        return SimpleNamespace(git_version=self.git_version)


class FakeHost(NodeHost):
    """NodeHost rooted in a temp directory with simulated commands and downloads."""

    def __init__(self, root: Path, tools=None, swap=False, broken_units=()):
        super().__init__(root)
        self.tools = set(REQUIRED_TOOLS) | {"apt-get"} if tools is None else set(tools)
        self.swap = swap
        self.broken_units = set(broken_units)
        self.units = {}
        self.commands = []
        self.downloads = []
        self.failing = {}
        (self.root / "run/systemd/system").mkdir(parents=True, exist_ok=True)

    def fail(self, *prefix, stderr="boom"):
        self.failing[tuple(prefix)] = stderr

    def _unit(self, name):
        return self.units.setdefault(name, {"enabled": False, "active": False})

    def run(self, args, check=True, env=None, timeout=None):
        args = list(args)
        self.commands.append(args)
        for prefix, stderr in self.failing.items():
            if tuple(args[:len(prefix)]) == prefix:
                if check:
                    raise CommandError(args, 1, stderr)
                return ""

        if args[0] == "systemctl":
            action = args[1]
            if action == "is-active":
                return "active\n" if self._unit(args[2])["active"] else "inactive\n"
            if action == "is-enabled":
                return "enabled\n" if self._unit(args[2])["enabled"] else "disabled\n"
            if action == "enable":
                self._unit(args[2])["enabled"] = True
            if action in ("start", "restart"):
                self._unit(args[2])["active"] = args[2] not in self.broken_units
            return ""
        if args[0] == "swapon":
            return "/swap.img file 2G 0B -2\n" if self.swap else ""
        if args[0] == "swapoff":
            self.swap = False
            return ""
        if args[:2] == ["apt-get", "install"]:
            packages = set(args[2:])
            self.tools |= {tool for tool, package in REQUIRED_TOOLS.items() if package in packages}
        return ""

    def which(self, tool):
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def download(self, url, path, mode=0o755):
        self.downloads.append(url)
        self.write_file(path, f"#!/bin/sh\n# {url}\n", mode=mode)

    def fetch_archive(self, url, dest_dir):
        self.downloads.append(url)
        if "cni-plugins" in url:
            names = ["loopback", "bridge", "host-local"]
        else:
            names = ["bin/containerd", "bin/containerd-shim-runc-v2", "bin/ctr"]
        for name in names:
            self.write_file(f"{dest_dir}/{name}", "#!/bin/sh\n", mode=0o755)


@pytest.fixture(scope="session")
def ca():
    return FakeCA()


@pytest.fixture
def kube_context(ca, tmp_path):
    return KubeContext(
        name="admin@test",
        cluster={
            "server": API_URL,
            "certificate-authority-data": base64.b64encode(ca.pem).decode("ascii"),
        },
        base_dir=tmp_path,
    )


@pytest.fixture
def certificates_api(ca):
    return FakeCertificatesApi(ca)


@pytest.fixture
def unreachable_certificates_api():
    return UnreachableCertificatesApi()


@pytest.fixture
def core_api():
    return FakeCoreApi()


@pytest.fixture
def no_sleep():
    slept = []
    return SimpleNamespace(calls=slept, sleep=slept.append)


@pytest.fixture(scope="session")
def enrolled(ca):
    """A signed identity for worker-1, as produced by a successful enrollment."""
    identity = NodeIdentity("worker-1")
    material = build_key_material(identity)
    return SimpleNamespace(identity=identity, material=material, cert_pem=ca.sign(material.csr_pem))


@pytest.fixture(scope="session")
def bundle(ca, enrolled):
    return EnrollmentBundle(
        node_name="worker-1",
        api_server_url=API_URL,
        ca_cert_base64=base64.b64encode(ca.pem).decode("ascii"),
        node_key_base64=base64.b64encode(enrolled.material.private_key_pem).decode("ascii"),
        node_cert_base64=base64.b64encode(enrolled.cert_pem).decode("ascii"),
        cluster_dns_ip="10.43.0.10",
    )


@pytest.fixture
def host(tmp_path):
    return FakeHost(tmp_path / "node")


@pytest.fixture
def make_certificates_api(ca):
    def factory(**kwargs):
        return FakeCertificatesApi(ca, **kwargs)
    return factory


@pytest.fixture
def make_core_api():
    return FakeCoreApi


@pytest.fixture
def make_version_api():
    return FakeVersionApi


@pytest.fixture
def make_host(tmp_path):
    def factory(**kwargs):
        return FakeHost(tmp_path / "node", **kwargs)
    return factory
