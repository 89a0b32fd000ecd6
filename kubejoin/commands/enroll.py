import logging
from typing import Optional

import typer
from kubernetes import client
from kubernetes.config.config_exception import ConfigException

from kubejoin.config import Config
from kubejoin.errors import KubejoinError
from kubejoin.modules.enroll import EnrollmentCoordinator
from kubejoin.modules.enroll.bundle import DEFAULT_PROGRAM
from kubejoin.utils import redact_sensitive_data
from kubejoin.utils.kube import load_kubeconfig_dict, new_api_client, read_active_context

app = typer.Typer(help="Control-plane side: mint, sign and hand off node credentials.")

logger = logging.getLogger("kubejoin.commands.enroll")


def _fail(phase: str, error: Exception) -> None:
    typer.echo(f"❌ enrollment failed during {phase}: {error}", err=True)
    raise typer.Exit(code=1)


def build_coordinator(
    kubeconfig: Optional[str],
    context: Optional[str],
    **kwargs,
) -> EnrollmentCoordinator:
    """Wire an EnrollmentCoordinator to the cluster behind ``context``."""
    kubeconfig_data = load_kubeconfig_dict(kubeconfig)
    kube_context = read_active_context(kubeconfig_data, context)
    api_client = new_api_client(kubeconfig, kube_context.name)
    return EnrollmentCoordinator(
        kube_context,
        core_api=client.CoreV1Api(api_client),
        certificates_api=client.CertificatesV1Api(api_client),
        version_api=client.VersionApi(api_client),
        **kwargs,
    )


@app.command("node")
def enroll_node(
    name: str = typer.Argument(..., help="Name of the new worker node (DNS subdomain)"),
    kubernetes_version: Optional[str] = typer.Option(
        None, help="Kubernetes version for the node binaries (default: API server version)"),
    containerd_version: Optional[str] = typer.Option(
        None, help=f"containerd version (default: {Config.CONTAINERD_VERSION})"),
    cni_version: Optional[str] = typer.Option(
        None, help=f"CNI plugins version (default: {Config.CNI_VERSION})"),
    kubeconfig: Optional[str] = typer.Option(None, help="Path to kubeconfig (default: $KUBECONFIG or ~/.kube/config)"),
    context: Optional[str] = typer.Option(None, help="Kubeconfig context (default: current-context)"),
    strict_dns: Optional[bool] = typer.Option(
        None, "--strict-dns/--lenient-dns", help="Fail instead of using the default DNS address"),
    manual_approval: bool = typer.Option(False, help="Wait for an operator to approve the CSR"),
    signing_attempts: Optional[int] = typer.Option(None, min=1, help="Certificate poll attempts"),
    signing_interval: Optional[float] = typer.Option(None, min=0, help="Seconds between certificate polls"),
    signer_name: Optional[str] = typer.Option(None, help=f"CSR signerName (default: {Config.SIGNER_NAME})"),
    program: str = typer.Option(DEFAULT_PROGRAM, help="Command prefix of the emitted invocation"),
):
    """Create and sign credentials for NAME and print the node-side command."""
    try:
        Config.validate()
    except ValueError as e:
        _fail("configuration", e)

    try:
        coordinator = build_coordinator(
            kubeconfig,
            context,
            strict_dns=strict_dns,
            approve=not manual_approval,
            attempts=signing_attempts,
            interval=signing_interval,
            signer_name=signer_name,
        )
    except (FileNotFoundError, ValueError, ConfigException) as e:
        _fail("kubeconfig", e)

    try:
        bundle = coordinator.enroll(
            name,
            kubernetes_version=kubernetes_version,
            containerd_version=containerd_version,
            cni_version=cni_version,
        )
    except KubejoinError as e:
        _fail(e.phase, e)
    except ValueError as e:
        _fail("input", e)

    logger.debug(f"Bundle parameters: {redact_sensitive_data(dict(bundle.to_params()))}")
    logger.info("------------------------------------------------------------------------")
    logger.info("  [SUCCESS] Node credentials signed. Run the command printed on stdout")
    logger.info("  on the new worker node (with kubejoin installed) to join it.")
    logger.info(f"  Then verify from here: kubectl get node {name}")
    logger.info("------------------------------------------------------------------------")
    typer.echo(bundle.to_command(program))
