"""The node provisioning steps.

Each step is a ``ProvisioningStep`` built from three plain functions:
``check`` (already in the desired state?), ``apply`` and ``verify``. Steps
only touch the node through ``ctx.host``.
"""

import logging
from collections import OrderedDict
from typing import List

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from ...config import Config
from ...errors import (
    ActivationError,
    ArtifactInstallError,
    ConfigRenderError,
    CredentialWriteError,
    PreflightError,
)
from ...utils import poll
from ..enroll.models import NODE_USER_PREFIX
from .configuration import (
    render_containerd_config,
    render_containerd_unit,
    render_kubeconfig,
    render_kubelet_config,
    render_kubelet_unit,
)
from .models import ProvisionContext, ProvisioningStep

logger = logging.getLogger("kubejoin.provision.steps")

# tool -> apt package providing it (None: cannot be installed by us)
REQUIRED_TOOLS = OrderedDict([
    ("systemctl", None),
    ("swapon", "util-linux"),
    ("swapoff", "util-linux"),
    ("modprobe", "kmod"),
    ("sysctl", "procps"),
    ("iptables", "iptables"),
    ("conntrack", "conntrack"),
    ("socat", "socat"),
])

KERNEL_MODULES = ["overlay", "br_netfilter"]
SYSCTL_SETTINGS = OrderedDict([
    ("net.bridge.bridge-nf-call-iptables", "1"),
    ("net.bridge.bridge-nf-call-ip6tables", "1"),
    ("net.ipv4.ip_forward", "1"),
])
NODE_BINARIES = ["kubelet", "kube-proxy", "kubectl"]


def _wait_active(ctx: ProvisionContext, unit: str) -> bool:
    if ctx.host.service_active(unit):
        return True
    return bool(poll(
        lambda: ctx.host.service_active(unit),
        Config.ACTIVATION_ATTEMPTS,
        Config.ACTIVATION_INTERVAL,
        ctx.sleep,
        f"{unit} to become active",
    ))


def _file_matches(ctx: ProvisionContext, path: str, content, mode: int = None) -> bool:
    data = content.encode("utf-8") if isinstance(content, str) else content
    if ctx.host.read_bytes(path) != data:
        return False
    return mode is None or ctx.host.mode(path) == mode


# --- 1. preflight -----------------------------------------------------------

def _modules_content() -> str:
    return "\n".join(KERNEL_MODULES) + "\n"


def _sysctl_content() -> str:
    return "".join(f"{k} = {v}\n" for k, v in SYSCTL_SETTINGS.items())


def _swap_in_fstab(ctx: ProvisionContext) -> List[int]:
    text = ctx.host.read_text(ctx.paths.fstab) or ""
    lines = []
    for index, line in enumerate(text.splitlines()):
        fields = line.split()
        if fields and not fields[0].startswith("#") and len(fields) >= 3 and fields[2] == "swap":
            lines.append(index)
    return lines


def _missing_tools(ctx: ProvisionContext) -> List[str]:
    return [tool for tool in REQUIRED_TOOLS if not ctx.host.which(tool)]


def preflight_check(ctx: ProvisionContext) -> bool:
    return (
        not _missing_tools(ctx)
        and not ctx.host.swap_active()
        and not _swap_in_fstab(ctx)
        and _file_matches(ctx, ctx.paths.modules_load, _modules_content())
        and _file_matches(ctx, ctx.paths.sysctl_conf, _sysctl_content())
    )


def preflight_apply(ctx: ProvisionContext) -> None:
    host = ctx.host
    missing = _missing_tools(ctx)
    if missing:
        not_installable = [tool for tool in missing if REQUIRED_TOOLS[tool] is None]
        if not_installable:
            raise PreflightError(f"Required tools not found and cannot be installed: {', '.join(not_installable)}")
        if not host.which("apt-get"):
            raise PreflightError(f"Required tools not found: {', '.join(missing)} (apt-get unavailable to install them)")
        packages = sorted({REQUIRED_TOOLS[tool] for tool in missing})
        logger.info(f"📦 Installing missing packages: {', '.join(packages)}")
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        host.run(["apt-get", "update", "-q"], env=env)
        host.run(["apt-get", "install", "-y", "-q"] + packages, env=env)

    # Swap must be off for the kubelet, now and after reboot.
    host.run(["swapoff", "-a"])
    swap_lines = _swap_in_fstab(ctx)
    if swap_lines:
        lines = (host.read_text(ctx.paths.fstab) or "").splitlines()
        for index in swap_lines:
            lines[index] = f"# {lines[index]}  # disabled by kubejoin"
        host.write_file(ctx.paths.fstab, "\n".join(lines) + "\n", mode=0o644)
        logger.info(f"  [✓] Disabled {len(swap_lines)} swap entr{'y' if len(swap_lines) == 1 else 'ies'} in {ctx.paths.fstab}")

    host.write_file(ctx.paths.modules_load, _modules_content(), mode=0o644)
    for module in KERNEL_MODULES:
        host.run(["modprobe", module])
    host.write_file(ctx.paths.sysctl_conf, _sysctl_content(), mode=0o644)
    host.run(["sysctl", "--system"])


def preflight_verify(ctx: ProvisionContext) -> bool:
    return not _missing_tools(ctx) and not ctx.host.swap_active()


# --- 2. CNI plugins ---------------------------------------------------------

def cni_check(ctx: ProvisionContext) -> bool:
    stamp = ctx.host.read_text(ctx.paths.cni_stamp)
    return (
        stamp is not None
        and stamp.strip() == ctx.bundle.cni_version
        and ctx.host.exists(f"{ctx.paths.cni_bin_dir}/loopback")
    )


def cni_apply(ctx: ProvisionContext) -> None:
    version = ctx.bundle.cni_version
    url = Config.CNI_URL.format(version=version, arch=ctx.arch)
    logger.info(f"📦 Installing CNI plugins v{version}")
    ctx.host.fetch_archive(url, ctx.paths.cni_bin_dir)
    ctx.host.makedirs(ctx.paths.cni_conf_dir)
    ctx.host.write_file(ctx.paths.cni_stamp, f"{version}\n", mode=0o644)


# --- 3. container runtime ---------------------------------------------------

def _runtime_stamp(ctx: ProvisionContext) -> str:
    return f"containerd={ctx.bundle.containerd_version} runc={Config.RUNC_VERSION}\n"


def runtime_check(ctx: ProvisionContext) -> bool:
    return (
        _file_matches(ctx, ctx.paths.runtime_stamp, _runtime_stamp(ctx))
        and _file_matches(ctx, ctx.paths.containerd_config, render_containerd_config(ctx))
        and _file_matches(ctx, ctx.paths.containerd_unit, render_containerd_unit(ctx))
        and ctx.host.service_active("containerd")
    )


def runtime_apply(ctx: ProvisionContext) -> None:
    host = ctx.host
    version = ctx.bundle.containerd_version
    if not _file_matches(ctx, ctx.paths.runtime_stamp, _runtime_stamp(ctx)):
        logger.info(f"📦 Installing containerd v{version} and runc v{Config.RUNC_VERSION}")
        host.fetch_archive(Config.CONTAINERD_URL.format(version=version, arch=ctx.arch), ctx.paths.containerd_prefix)
        host.download(Config.RUNC_URL.format(version=Config.RUNC_VERSION, arch=ctx.arch), ctx.paths.runc_bin, mode=0o755)
        host.write_file(ctx.paths.runtime_stamp, _runtime_stamp(ctx), mode=0o644)

    # The runtime and the kubelet must agree on the cgroup driver.
    logger.info(f"📝 Writing containerd config (cgroup driver: {ctx.cgroup_driver})")
    host.write_file(ctx.paths.containerd_config, render_containerd_config(ctx), mode=0o644)
    host.write_file(ctx.paths.containerd_unit, render_containerd_unit(ctx), mode=0o644)
    host.run(["systemctl", "daemon-reload"])
    host.run(["systemctl", "enable", "containerd"])
    host.run(["systemctl", "restart", "containerd"])


def runtime_verify(ctx: ProvisionContext) -> bool:
    return (
        _file_matches(ctx, ctx.paths.runtime_stamp, _runtime_stamp(ctx))
        and _wait_active(ctx, "containerd")
    )


# --- 4. node binaries -------------------------------------------------------

def binaries_check(ctx: ProvisionContext) -> bool:
    # Always replaced: a mix of stale and new binaries is worse than a restart.
    return False


def binaries_apply(ctx: ProvisionContext) -> None:
    host = ctx.host
    version = ctx.bundle.kubernetes_version
    for binary in NODE_BINARIES:
        if host.remove(f"{ctx.paths.bin_dir}/{binary}"):
            logger.info(f"🗑️  Removed existing {binary}")
    for binary in NODE_BINARIES:
        url = Config.KUBERNETES_URL.format(version=version, arch=ctx.arch, binary=binary)
        host.download(url, f"{ctx.paths.bin_dir}/{binary}", mode=0o755)
    host.write_file(ctx.paths.binaries_stamp, f"{version}\n", mode=0o644)


def binaries_verify(ctx: ProvisionContext) -> bool:
    return all(ctx.host.is_executable(f"{ctx.paths.bin_dir}/{b}") for b in NODE_BINARIES)


# --- 5. credentials ---------------------------------------------------------

def _credential_files(ctx: ProvisionContext):
    bundle = ctx.bundle
    name = bundle.node_name
    return [
        (ctx.paths.ca_cert, bundle.decode("ca_cert_base64"), 0o644),
        (ctx.paths.node_cert(name), bundle.decode("node_cert_base64"), 0o644),
        (ctx.paths.node_key(name), bundle.decode("node_key_base64"), 0o600),
    ]


def validate_credentials(ctx: ProvisionContext) -> None:
    """Check the decoded material before anything is written.

    Raises:
        CredentialWriteError: If any item does not parse or the certificate does not match the key
    """
    bundle = ctx.bundle
    try:
        x509.load_pem_x509_certificate(bundle.decode("ca_cert_base64"), default_backend())
        cert = x509.load_pem_x509_certificate(bundle.decode("node_cert_base64"), default_backend())
        key = serialization.load_pem_private_key(bundle.decode("node_key_base64"), None, default_backend())
    except (ValueError, TypeError) as e:
        raise CredentialWriteError(f"Credential material does not parse: {e}") from e

    if cert.public_key().public_numbers() != key.public_key().public_numbers():
        raise CredentialWriteError("Signed certificate does not match the node private key")

    expected = f"{NODE_USER_PREFIX}{bundle.node_name}"
    common_names = [a.value for a in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    if common_names != [expected]:
        raise CredentialWriteError(f"Certificate subject {common_names} does not name {expected}")


def credentials_check(ctx: ProvisionContext) -> bool:
    return all(_file_matches(ctx, path, data, mode) for path, data, mode in _credential_files(ctx))


def credentials_apply(ctx: ProvisionContext) -> None:
    validate_credentials(ctx)
    for path, data, mode in _credential_files(ctx):
        ctx.host.write_file(path, data, mode=mode)
        logger.info(f"  [✓] Wrote {path} ({mode:o})")


# --- 6. kubeconfigs ---------------------------------------------------------

def _kubeconfig_paths(ctx: ProvisionContext) -> List[str]:
    return [ctx.paths.kubelet_kubeconfig, ctx.paths.kube_proxy_kubeconfig]


def kubeconfig_check(ctx: ProvisionContext) -> bool:
    content = render_kubeconfig(ctx)
    return all(_file_matches(ctx, path, content, 0o600) for path in _kubeconfig_paths(ctx))


def kubeconfig_apply(ctx: ProvisionContext) -> None:
    content = render_kubeconfig(ctx)
    for path in _kubeconfig_paths(ctx):
        ctx.host.write_file(path, content, mode=0o600)
        logger.info(f"  [✓] Wrote {path}")


# --- 7. kubelet config and unit ----------------------------------------------

def _kubelet_files(ctx: ProvisionContext):
    return [
        (ctx.paths.kubelet_config, render_kubelet_config(ctx)),
        (ctx.paths.kubelet_unit, render_kubelet_unit(ctx)),
    ]


def kubelet_config_check(ctx: ProvisionContext) -> bool:
    return all(_file_matches(ctx, path, content) for path, content in _kubelet_files(ctx))


def kubelet_config_apply(ctx: ProvisionContext) -> None:
    for path, content in _kubelet_files(ctx):
        ctx.host.write_file(path, content, mode=0o644)
        logger.info(f"  [✓] Wrote {path}")


# --- 8. activation ----------------------------------------------------------

def activation_check(ctx: ProvisionContext) -> bool:
    return (
        not ctx.changed
        and ctx.host.service_enabled("kubelet")
        and ctx.host.service_active("kubelet")
    )


def activation_apply(ctx: ProvisionContext) -> None:
    host = ctx.host
    host.run(["systemctl", "daemon-reload"])
    host.run(["systemctl", "enable", "kubelet"])
    # restart also starts a stopped unit
    logger.info("🚀 Running systemctl restart kubelet")
    host.run(["systemctl", "restart", "kubelet"])


def activation_verify(ctx: ProvisionContext) -> bool:
    return _wait_active(ctx, "kubelet")


def default_steps() -> List[ProvisioningStep]:
    """The ordered node pipeline."""
    return [
        ProvisioningStep(
            "preflight", preflight_check, preflight_apply, preflight_verify,
            error=PreflightError, hint="Install the missing tools or turn swap off and re-run.",
        ),
        ProvisioningStep(
            "cni-plugins", cni_check, cni_apply, cni_check,
            error=ArtifactInstallError, hint="Check network access to the CNI plugins release.",
        ),
        ProvisioningStep(
            "container-runtime", runtime_check, runtime_apply, runtime_verify,
            error=ArtifactInstallError, hint="Inspect `journalctl -u containerd`.",
        ),
        ProvisioningStep(
            "node-binaries", binaries_check, binaries_apply, binaries_verify,
            error=ArtifactInstallError, hint="Check network access to dl.k8s.io.",
        ),
        ProvisioningStep(
            "credentials", credentials_check, credentials_apply, credentials_check,
            error=CredentialWriteError, hint="Re-run the enrollment on the control plane for a fresh bundle.",
        ),
        ProvisioningStep(
            "kubeconfigs", kubeconfig_check, kubeconfig_apply, kubeconfig_check,
            error=ConfigRenderError,
        ),
        ProvisioningStep(
            "kubelet-config", kubelet_config_check, kubelet_config_apply, kubelet_config_check,
            error=ConfigRenderError,
        ),
        ProvisioningStep(
            "activation", activation_check, activation_apply, activation_verify,
            error=ActivationError, hint="The kubelet did not stay running. Inspect `journalctl -u kubelet`.",
        ),
    ]
