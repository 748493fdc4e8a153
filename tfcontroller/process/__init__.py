"""
Execution of Terraform Jobs: assembly, change detection and outputs.
"""

from .assembler import GitSource, JobAssembler
from .meta import ExecutionMeta, replace_terraform_source
from .outputs import collect_outputs, interface_to_string, publish_outputs, read_outputs
from .status import JobPhase, analyze_terraform_log, failure_message, job_phase

__all__ = [
    "ExecutionMeta",
    "GitSource",
    "JobAssembler",
    "JobPhase",
    "analyze_terraform_log",
    "collect_outputs",
    "failure_message",
    "interface_to_string",
    "job_phase",
    "publish_outputs",
    "read_outputs",
    "replace_terraform_source",
]
