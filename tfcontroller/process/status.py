"""
Terraform log analysis for failed executor Jobs.
"""

import logging
import re
from enum import Enum
from typing import Tuple

from kubernetes import client

from ..cluster import ClusterClient
from ..errors import ClusterError
from .assembler import TERRAFORM_CONTAINER_NAME, TERRAFORM_INIT_CONTAINER_NAME

logger = logging.getLogger(__name__)

_ANSI_COLOR = re.compile(r"\x1b\[[0-9;]*m")


class Stage(str, Enum):
    """Stage of the executor Pod the log was taken from."""
    INIT = "TerraformInit"
    APPLY = "TerraformApply"


class JobPhase(str, Enum):
    """Coarse phase of an executor Job."""
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def strip_color(log: str) -> str:
    return _ANSI_COLOR.sub("", log)


def analyze_terraform_log(log: str) -> str:
    """
    Return the error block of a Terraform log, or "" when there is none.

    The block starts at the first `Error:` line and runs to the end of the log.
    """
    lines = strip_color(log).split("\n")
    for i, line in enumerate(lines):
        if "Error:" in line:
            return "\n".join(lines[i:]).strip()
    return ""


def job_phase(job: client.V1Job) -> JobPhase:
    """Derive the phase of a Job from its status counters and conditions."""
    status = job.status
    if status is None:
        return JobPhase.RUNNING
    if status.succeeded:
        return JobPhase.SUCCEEDED
    for condition in status.conditions or []:
        if condition.type == "Failed" and condition.status == "True":
            return JobPhase.FAILED
    return JobPhase.RUNNING


def failure_message(cluster: ClusterClient, namespace: str, job_name: str) -> Tuple[Stage, str]:
    """
    Extract why an executor Job failed from its Pod logs.

    The `terraform init` log is consulted first; when it is clean the main
    container log is used.
    """
    for stage, container in ((Stage.INIT, TERRAFORM_INIT_CONTAINER_NAME), (Stage.APPLY, TERRAFORM_CONTAINER_NAME)):
        try:
            log = cluster.get_job_logs(namespace, job_name, container)
        except ClusterError as e:
            logger.warning(f"Failed to read the {container} log of Job {namespace}/{job_name}: {e}")
            continue
        message = analyze_terraform_log(log or "")
        if message:
            return stage, message
    return Stage.APPLY, f"Job {namespace}/{job_name} failed"
