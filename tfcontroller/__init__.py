"""
tfcontroller - Terraform Configurations reconciled into Kubernetes Jobs.

A Configuration custom resource declares Terraform code (inline HCL or a git
source), its variables and where its state lives. The controller:
- resolves the state backend (kubernetes Secret or S3 object)
- renders the configuration and runs `terraform apply` in a Job
- reads the outputs back from the state and publishes them to a Secret
- runs `terraform destroy` and cleans up when the Configuration is deleted
"""

from .reconciler import ConfigurationReconciler, ReconcileResult
from .settings import ControllerSettings, get_settings, reload_settings

__version__ = "0.1.0"
__all__ = [
    "ConfigurationReconciler",
    "ControllerSettings",
    "ReconcileResult",
    "get_settings",
    "reload_settings",
]
