"""Node-side provisioning.

- host: command, file and download access to the node
- models: step and path models
- configuration: rendered configuration files
- steps: the ordered provisioning steps
- pipeline: runs the steps
"""

from .host import NodeHost
from .models import NodePaths, ProvisionContext, ProvisioningStep, StepResult, StepStatus
from .pipeline import Provisioner
from .steps import default_steps

__all__ = [
    'NodeHost',
    'NodePaths',
    'ProvisionContext',
    'ProvisioningStep',
    'StepResult',
    'StepStatus',
    'Provisioner',
    'default_steps',
]
