from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class DeploymentStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.COMPLETE, DeploymentStatus.FAILED)


# stack statuses which are terminal but mean that the requested operation did not succeed
FAILED_STACK_STATUSES = (
    "ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_COMPLETE",
)


def get_deployment_status(stack_status: str) -> DeploymentStatus:
    """Map a stack status of the orchestrator (e.g. ``CREATE_IN_PROGRESS``) to a deployment status."""
    if stack_status == "REVIEW_IN_PROGRESS":
        return DeploymentStatus.PENDING
    if stack_status.endswith("_FAILED") or stack_status in FAILED_STACK_STATUSES:
        return DeploymentStatus.FAILED
    if stack_status.endswith("_IN_PROGRESS"):
        return DeploymentStatus.IN_PROGRESS
    if stack_status.endswith("_COMPLETE"):
        return DeploymentStatus.COMPLETE
    return DeploymentStatus.PENDING


@dataclass(frozen=True)
class DeploymentState:
    stack_id: str
    stack_name: str
    status: DeploymentStatus
    stack_status: str
    reason: Optional[str] = None
    # only populated once the deployment is complete
    outputs: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "StackId": self.stack_id,
            "StackName": self.stack_name,
            "Status": self.status.value,
            "StackStatus": self.stack_status,
            "StatusReason": self.reason,
            "Outputs": dict(self.outputs),
        }
