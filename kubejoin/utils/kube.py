import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from kubernetes import client, config


@dataclass(frozen=True)
class KubeContext:
    """The active kubeconfig context and the cluster entry it points at."""
    name: str
    cluster: Dict[str, Any] = field(default_factory=dict)
    base_dir: Path = Path(".")


def resolve_kubeconfig_path(path: Optional[str] = None) -> Path:
    """Pick the kubeconfig file: explicit path, then $KUBECONFIG, then ~/.kube/config."""
    if path:
        candidate = path
    elif os.environ.get("KUBECONFIG"):
        candidate = os.environ["KUBECONFIG"].split(os.pathsep)[0]
    else:
        candidate = "~/.kube/config"
    resolved = Path(os.path.expanduser(candidate)).resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
    return resolved


def load_kubeconfig_dict(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the raw kubeconfig from the KUBECONFIG_CONTENT env var or from a file.
    The returned dict carries the source directory under ``_base_dir``.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ:
        data = yaml.safe_load(os.environ["KUBECONFIG_CONTENT"]) or {}
        data["_base_dir"] = os.getcwd()
        return data

    resolved = resolve_kubeconfig_path(path)
    with open(resolved) as f:
        data = yaml.safe_load(f) or {}
    data["_base_dir"] = str(resolved.parent)
    return data


def read_active_context(kubeconfig: Dict[str, Any], context: Optional[str] = None) -> KubeContext:
    """Return the cluster entry of ``context`` (or the current context)."""
    name = context or kubeconfig.get("current-context")
    if not name:
        raise ValueError("❌ Kubeconfig has no current-context and no --context was given.")

    contexts = {c.get("name"): c.get("context") or {} for c in kubeconfig.get("contexts") or []}
    if name not in contexts:
        raise ValueError(f"❌ Context '{name}' not found in kubeconfig.")

    cluster_name = contexts[name].get("cluster")
    clusters = {c.get("name"): c.get("cluster") or {} for c in kubeconfig.get("clusters") or []}
    if cluster_name not in clusters:
        raise ValueError(f"❌ Cluster '{cluster_name}' referenced by context '{name}' not found.")

    return KubeContext(
        name=name,
        cluster=clusters[cluster_name],
        base_dir=Path(kubeconfig.get("_base_dir", ".")),
    )


def new_api_client(path: Optional[str] = None, context: Optional[str] = None) -> client.ApiClient:
    """Build an authenticated ApiClient for ``context`` without touching global config."""
    if "KUBECONFIG_CONTENT" in os.environ:
        raw = yaml.safe_load(os.environ["KUBECONFIG_CONTENT"]) or {}
        return config.new_client_from_config_dict(raw, context=context)
    return config.new_client_from_config(config_file=str(resolve_kubeconfig_path(path)), context=context)
