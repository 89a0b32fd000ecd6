"""Node key pair and certificate signing request generation."""

import logging

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ...config import Config
from ...errors import CSRBuildError, KeyGenError
from .models import KeyMaterial, NodeIdentity

logger = logging.getLogger("kubejoin.enroll.credentials")

MIN_KEY_SIZE = 2048

# Usage strings understood by the certificates.k8s.io API, matching the
# extensions placed in the CSR below.
CSR_USAGES = ["key encipherment", "data encipherment", "server auth", "client auth"]


def _generate_private_key(key_size: int) -> rsa.RSAPrivateKey:
    if key_size < MIN_KEY_SIZE:
        raise KeyGenError(f"RSA key size {key_size} is below the {MIN_KEY_SIZE}-bit minimum")
    try:
        return rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
            backend=default_backend(),
        )
    except (ValueError, TypeError) as e:
        raise KeyGenError(f"RSA key generation failed: {e}") from e


def build_key_material(identity: NodeIdentity, key_size: int = None) -> KeyMaterial:
    """Generate a fresh key pair and a node CSR for ``identity``.

    The subject is ``CN=system:node:<name>, O=system:nodes`` so the node
    authorizer places the client in the node group and nothing else. Key usage
    is limited to key/data encipherment and extended key usage to server and
    client auth.

    Raises:
        KeyGenError: If the key cannot be generated
        CSRBuildError: If the CSR cannot be built or encoded
    """
    key_size = key_size or Config.KEY_SIZE
    logger.info(f"--> Generating credentials for {identity.name}...")
    key = _generate_private_key(key_size)

    try:
        subject = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, identity.common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, identity.group),
        ])
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=True,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([
                    ExtendedKeyUsageOID.SERVER_AUTH,
                    ExtendedKeyUsageOID.CLIENT_AUTH,
                ]),
                critical=False,
            )
            .sign(key, hashes.SHA256(), default_backend())
        )
        csr_pem = csr.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    except (ValueError, TypeError) as e:
        raise CSRBuildError(f"Failed to build CSR for {identity.name}: {e}", node=identity.name) from e

    logger.info("  [✓] Generated private key and CSR.")
    return KeyMaterial(private_key_pem=key_pem, csr_pem=csr_pem)
