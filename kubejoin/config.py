"""Configuration management for the kubejoin application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration with sensible defaults."""

    # Logging
    LOG_LEVEL: str = os.getenv("KUBEJOIN_LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "KUBEJOIN_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Cluster discovery
    DEFAULT_DNS: str = os.getenv("KUBEJOIN_DEFAULT_DNS", "10.96.0.10")
    STRICT_DNS: bool = _env_bool("KUBEJOIN_STRICT_DNS")
    DNS_SERVICE: str = os.getenv("KUBEJOIN_DNS_SERVICE", "kube-dns")
    DNS_NAMESPACE: str = os.getenv("KUBEJOIN_DNS_NAMESPACE", "kube-system")

    # Signing
    SIGNER_NAME: str = os.getenv("KUBEJOIN_SIGNER_NAME", "kubernetes.io/kube-apiserver-client-kubelet")
    SIGNING_ATTEMPTS: int = int(os.getenv("KUBEJOIN_SIGNING_ATTEMPTS", "10"))
    SIGNING_INTERVAL: float = float(os.getenv("KUBEJOIN_SIGNING_INTERVAL", "1.0"))
    KEY_SIZE: int = int(os.getenv("KUBEJOIN_KEY_SIZE", "2048"))

    # Version pins
    KUBERNETES_VERSION: str = os.getenv("KUBEJOIN_KUBERNETES_VERSION", "1.28.0")
    CONTAINERD_VERSION: str = os.getenv("KUBEJOIN_CONTAINERD_VERSION", "1.7.22")
    CNI_VERSION: str = os.getenv("KUBEJOIN_CNI_VERSION", "1.5.1")
    RUNC_VERSION: str = os.getenv("KUBEJOIN_RUNC_VERSION", "1.1.14")

    # Node host
    CGROUP_DRIVER: str = os.getenv("KUBEJOIN_CGROUP_DRIVER", "")
    ARCH: str = os.getenv("KUBEJOIN_ARCH", "")
    DOWNLOAD_TIMEOUT: int = int(os.getenv("KUBEJOIN_DOWNLOAD_TIMEOUT", "300"))
    ACTIVATION_ATTEMPTS: int = int(os.getenv("KUBEJOIN_ACTIVATION_ATTEMPTS", "15"))
    ACTIVATION_INTERVAL: float = float(os.getenv("KUBEJOIN_ACTIVATION_INTERVAL", "2.0"))

    # Release locations
    CNI_URL: str = os.getenv(
        "KUBEJOIN_CNI_URL",
        "https://github.com/containernetworking/plugins/releases/download/"
        "v{version}/cni-plugins-linux-{arch}-v{version}.tgz"
    )
    CONTAINERD_URL: str = os.getenv(
        "KUBEJOIN_CONTAINERD_URL",
        "https://github.com/containerd/containerd/releases/download/"
        "v{version}/containerd-{version}-linux-{arch}.tar.gz"
    )
    RUNC_URL: str = os.getenv(
        "KUBEJOIN_RUNC_URL",
        "https://github.com/opencontainers/runc/releases/download/v{version}/runc.{arch}"
    )
    KUBERNETES_URL: str = os.getenv(
        "KUBEJOIN_KUBERNETES_URL",
        "https://dl.k8s.io/release/v{version}/bin/linux/{arch}/{binary}"
    )

    # Security
    REDACT_KEYS: tuple = ("key", "password", "secret", "token", "cert")

    @classmethod
    def validate(cls) -> None:
        """Validate numeric bounds."""
        problems = []
        if cls.SIGNING_ATTEMPTS < 1:
            problems.append("KUBEJOIN_SIGNING_ATTEMPTS must be at least 1")
        if cls.SIGNING_INTERVAL < 0:
            problems.append("KUBEJOIN_SIGNING_INTERVAL cannot be negative")
        if cls.KEY_SIZE < 2048:
            problems.append("KUBEJOIN_KEY_SIZE must be at least 2048")
        if cls.ACTIVATION_ATTEMPTS < 1:
            problems.append("KUBEJOIN_ACTIVATION_ATTEMPTS must be at least 1")
        if cls.CGROUP_DRIVER and cls.CGROUP_DRIVER not in ("systemd", "cgroupfs"):
            problems.append("KUBEJOIN_CGROUP_DRIVER must be 'systemd' or 'cgroupfs'")
        if problems:
            raise ValueError(f"Invalid configuration: {'; '.join(problems)}")

# Don't validate on import to allow for dynamic configuration
# Call Config.validate() explicitly when needed
