from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from kubejoin.errors import KubejoinError
from kubejoin.modules.enroll.bundle import EnrollmentBundle
from kubejoin.modules.provision import NodeHost, Provisioner

app = typer.Typer(help="Node side: install, configure and start the kubelet from an enrollment bundle.")

# Options shared by `apply` and `plan`
NAME = typer.Option(..., "--name", help="Node name")
API_URL = typer.Option(..., "--api-url", help="API server URL")
CA_CERT = typer.Option(..., "--ca-cert-base64", help="Cluster CA bundle, base64")
NODE_KEY = typer.Option(..., "--node-key-base64", help="Node private key, base64")
NODE_CERT = typer.Option(..., "--node-cert-base64", help="Signed node certificate, base64")
DNS_IP = typer.Option(..., "--cluster-dns-ip", help="Cluster DNS service address")
K8S_VERSION = typer.Option(None, "--kubernetes-version", help="Kubernetes version")
CONTAINERD_VERSION = typer.Option(None, "--containerd-version", help="containerd version")
CNI_VERSION = typer.Option(None, "--cni-version", help="CNI plugins version")
ROOT = typer.Option("/", "--root", help="Filesystem root to provision")


def _fail(phase: str, error: Exception) -> None:
    typer.echo(f"❌ provisioning failed during {phase}: {error}", err=True)
    raise typer.Exit(code=1)


def _provisioner(root: str, **params) -> Provisioner:
    try:
        bundle = EnrollmentBundle.from_params(**params)
    except KubejoinError as e:
        _fail(e.phase, e)
    return Provisioner(NodeHost(root), bundle)


@app.command("apply")
def apply(
    name: str = NAME,
    api_url: str = API_URL,
    ca_cert_base64: str = CA_CERT,
    node_key_base64: str = NODE_KEY,
    node_cert_base64: str = NODE_CERT,
    cluster_dns_ip: str = DNS_IP,
    kubernetes_version: Optional[str] = K8S_VERSION,
    containerd_version: Optional[str] = CONTAINERD_VERSION,
    cni_version: Optional[str] = CNI_VERSION,
    root: str = ROOT,
):
    """Provision this node. Safe to re-run."""
    provisioner = _provisioner(
        root,
        node_name=name,
        api_server_url=api_url,
        ca_cert_base64=ca_cert_base64,
        node_key_base64=node_key_base64,
        node_cert_base64=node_cert_base64,
        cluster_dns_ip=cluster_dns_ip,
        kubernetes_version=kubernetes_version,
        containerd_version=containerd_version,
        cni_version=cni_version,
    )
    try:
        results = provisioner.run()
    except KubejoinError as e:
        _fail(e.phase, e)

    applied = [r.name for r in results if r.status.value == "applied"]
    typer.echo(f"✅ Node {name} provisioned ({len(applied)}/{len(results)} steps applied); kubelet is running.")


@app.command("plan")
def plan(
    name: str = NAME,
    api_url: str = API_URL,
    ca_cert_base64: str = CA_CERT,
    node_key_base64: str = NODE_KEY,
    node_cert_base64: str = NODE_CERT,
    cluster_dns_ip: str = DNS_IP,
    kubernetes_version: Optional[str] = K8S_VERSION,
    containerd_version: Optional[str] = CONTAINERD_VERSION,
    cni_version: Optional[str] = CNI_VERSION,
    root: str = ROOT,
):
    """Show which steps are already in place without changing anything."""
    provisioner = _provisioner(
        root,
        node_name=name,
        api_server_url=api_url,
        ca_cert_base64=ca_cert_base64,
        node_key_base64=node_key_base64,
        node_cert_base64=node_cert_base64,
        cluster_dns_ip=cluster_dns_ip,
        kubernetes_version=kubernetes_version,
        containerd_version=containerd_version,
        cni_version=cni_version,
    )
    try:
        steps = provisioner.plan()
    except KubejoinError as e:
        _fail(e.phase, e)

    table = Table(title=f"Provisioning plan for {name}")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("State")
    for index, (step, satisfied) in enumerate(steps, start=1):
        table.add_row(str(index), step, "[green]in place[/green]" if satisfied else "[yellow]pending[/yellow]")
    Console().print(table)
