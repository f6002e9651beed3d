"""Exceptions raised by the provisioning stages.

Every stage of a run raises a subclass of ``DeploymentError`` naming the stage
that failed and the last resource identifier it knew about, so the operator
can find (and delete) whatever was left behind.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base exception for ec2-deploy."""

    stage: str = "deploy"

    def __init__(self, message: str, resource_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        if self.resource_id:
            return f"[{self.stage}] {self.message} (resource: {self.resource_id})"
        return f"[{self.stage}] {self.message}"


class ConfigError(DeploymentError):
    """Invalid configuration or unusable AWS credentials."""

    stage = "config"


class NetworkNotFound(DeploymentError):
    """No usable VPC or subnet was found."""

    stage = "network"


class PolicyCreationFailed(DeploymentError):
    """The security group or one of its ingress rules was rejected."""

    stage = "security-group"


class LaunchFailed(DeploymentError):
    """The run_instances request failed or returned nothing."""

    stage = "launch"


class InstanceNotRunning(DeploymentError):
    """The instance did not reach the running state in time."""

    stage = "wait-running"


class Unreachable(DeploymentError):
    """The instance never accepted an SSH connection."""

    stage = "wait-ssh"


class ProvisionFailed(DeploymentError):
    """A remote command exited with a non-zero status."""

    stage = "provision"

    def __init__(self, message: str, resource_id: Optional[str] = None, output=None, stage: Optional[str] = None):
        super().__init__(message, resource_id=resource_id, stage=stage)
        self.output = output

    @property
    def stderr(self) -> str:
        return self.output.stderr if self.output is not None else ""


class RecordUpdateFailed(DeploymentError):
    """Route 53 rejected the record change."""

    stage = "dns-update"


class ResolutionTimeout(DeploymentError):
    """The record never resolved to the expected address."""

    stage = "dns-check"


class CleanupFailed(DeploymentError):
    """A resource could not be deleted."""

    stage = "cleanup"


class PollTimeout(Exception):
    """A polling loop ran out of time. Stages convert this into their own error."""

    def __init__(self, description: str, elapsed: float, attempts: int, last_result=None):
        super().__init__(f"Timed out after {elapsed:.0f}s ({attempts} attempts) waiting for {description}")
        self.description = description
        self.elapsed = elapsed
        self.attempts = attempts
        self.last_result = last_result
