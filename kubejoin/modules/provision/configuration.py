"""Node configuration rendering.

Service units, the containerd config and the kubelet config are rendered from
the Jinja2 templates in ``templates/``. Kubeconfigs are built as plain dicts
and dumped with PyYAML.

Rendered content is deterministic for a given bundle and host, which is what
lets the steps compare it against the file on disk to decide whether there is
anything to do.
"""

import logging
import os
from typing import Any, Dict

import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ...errors import ConfigRenderError
from ..enroll.models import NODE_USER_PREFIX
from .models import ProvisionContext

logger = logging.getLogger("kubejoin.provision.configuration")

CLUSTER_NAME = "kubernetes"
CLUSTER_DOMAIN = "cluster.local"
SANDBOX_IMAGE = "registry.k8s.io/pause:3.9"


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def render_template(name: str, **context: Any) -> str:
    """Render one template with strict undefined handling.

    Raises:
        ConfigRenderError: If the template is missing, broken, or references an unknown variable
    """
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    try:
        return env.get_template(name).render(**context)
    except TemplateNotFound as e:
        raise ConfigRenderError(f"Configuration template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigRenderError(f"Template syntax error in {name}: {e}") from e
    except UndefinedError as e:
        raise ConfigRenderError(f"Missing required template variable in {name}: {e}") from e


def render_containerd_config(ctx: ProvisionContext) -> str:
    return render_template(
        'containerd-config.toml.j2',
        sandbox_image=SANDBOX_IMAGE,
        runc_bin=ctx.paths.runc_bin,
        cgroup_driver=ctx.cgroup_driver,
        cni_bin_dir=ctx.paths.cni_bin_dir,
        cni_conf_dir=ctx.paths.cni_conf_dir,
    )


def render_containerd_unit(ctx: ProvisionContext) -> str:
    return render_template(
        'containerd.service.j2',
        containerd_bin=f"{ctx.paths.containerd_prefix}/bin/containerd",
        containerd_config=ctx.paths.containerd_config,
    )


def render_kubelet_config(ctx: ProvisionContext) -> str:
    name = ctx.bundle.node_name
    return render_template(
        'kubelet-config.yaml.j2',
        ca_file=ctx.paths.ca_cert,
        cgroup_driver=ctx.cgroup_driver,
        cluster_domain=CLUSTER_DOMAIN,
        cluster_dns=ctx.bundle.cluster_dns_ip,
        resolv_conf=ctx.resolv_conf,
        cert_file=ctx.paths.node_cert(name),
        key_file=ctx.paths.node_key(name),
    )


def render_kubelet_unit(ctx: ProvisionContext) -> str:
    return render_template(
        'kubelet.service.j2',
        kubelet_bin=f"{ctx.paths.bin_dir}/kubelet",
        kubelet_config=ctx.paths.kubelet_config,
        kubeconfig=ctx.paths.kubelet_kubeconfig,
        node_name=ctx.bundle.node_name,
    )


def build_kubeconfig(ctx: ProvisionContext) -> Dict[str, Any]:
    """Kubeconfig for the node identity with certificate, key and CA embedded."""
    bundle = ctx.bundle
    user = f"{NODE_USER_PREFIX}{bundle.node_name}"
    return {
        'apiVersion': 'v1',
        'kind': 'Config',
        'clusters': [{
            'name': CLUSTER_NAME,
            'cluster': {
                'server': bundle.api_server_url,
                'certificate-authority-data': bundle.ca_cert_base64,
            },
        }],
        'users': [{
            'name': user,
            'user': {
                'client-certificate-data': bundle.node_cert_base64,
                'client-key-data': bundle.node_key_base64,
            },
        }],
        'contexts': [{
            'name': 'default',
            'context': {'cluster': CLUSTER_NAME, 'user': user},
        }],
        'current-context': 'default',
        'preferences': {},
    }


def render_kubeconfig(ctx: ProvisionContext) -> str:
    return yaml.safe_dump(build_kubeconfig(ctx), default_flow_style=False, sort_keys=False)
