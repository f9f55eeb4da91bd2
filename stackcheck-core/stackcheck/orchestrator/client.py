"""
A thin client for the external orchestrator (AWS CloudFormation, or any endpoint speaking its API).

The orchestrator is a black box: descriptors are submitted, the status of a deployment is polled, and outputs are
read once the deployment is complete. Failures are reported with the reason given by the orchestrator and are never
retried locally.
"""

import logging
import time
from typing import Any, Mapping

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from stackcheck import config
from stackcheck.constants import VERSION
from stackcheck.descriptor.exceptions import DeploymentTimeout, ProvisioningError
from stackcheck.descriptor.parameters import normalize_parameter_values
from stackcheck.descriptor.redaction import mask_parameter_values, redact, register_secret_parameters
from stackcheck.descriptor.validator import DescriptorValidator
from stackcheck.orchestrator.models import DeploymentState, DeploymentStatus, get_deployment_status
from stackcheck.utils.strings import short_uid, to_str

LOG = logging.getLogger(__name__)


def create_cloudformation_client(region_name: str = None, endpoint_url: str = None):
    return boto3.client(
        "cloudformation",
        region_name=region_name or config.AWS_REGION,
        endpoint_url=endpoint_url or config.SC_ENDPOINT_URL,
        config=Config(user_agent_extra=f"stackcheck/{VERSION}"),
    )


class StackOrchestrator:
    """Submits descriptors to the orchestrator and follows the resulting deployments."""

    def __init__(
        self,
        client=None,
        validator: DescriptorValidator = None,
        region_name: str = None,
        endpoint_url: str = None,
    ):
        self.client = client or create_cloudformation_client(region_name, endpoint_url)
        self.validator = validator or DescriptorValidator()

    def submit(
        self,
        template_body: str | bytes,
        parameters: Mapping[str, Any] | list | None,
        stack_name: str,
        capabilities: list[str] = None,
        tags: Mapping[str, str] = None,
    ) -> str:
        """
        Validate the descriptor and submit it for deployment.

        :param template_body: the descriptor body
        :param parameters: the supplied parameter values, defaults are left to the orchestrator
        :param stack_name: the name of the new deployment
        :param capabilities: capabilities to acknowledge, e.g. ``CAPABILITY_IAM``
        :param tags: tags applied to the deployment
        :return: the ID of the deployment (the stack ID)
        :raises DescriptorError: if the descriptor is invalid
        :raises ProvisioningError: if the orchestrator rejects the submission
        """
        resolved = self.validator.validate(template_body, parameters)
        template_body = to_str(template_body)
        values = normalize_parameter_values(parameters)
        register_secret_parameters(resolved.descriptor.parameters, values)

        LOG.debug(
            "Submitting stack %s with parameters %s",
            stack_name,
            mask_parameter_values(values, resolved.descriptor.secret_parameter_names),
        )
        kwargs = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Parameters": [{"ParameterKey": k, "ParameterValue": v} for k, v in values.items()],
            "ClientRequestToken": f"stackcheck-{short_uid()}",
        }
        if capabilities:
            kwargs["Capabilities"] = list(capabilities)
        if tags:
            kwargs["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]

        try:
            stack_id = self.client.create_stack(**kwargs)["StackId"]
        except ClientError as e:
            raise ProvisioningError(_error_message(e)) from e
        LOG.info("Submitted stack %s: %s", stack_name, stack_id)
        return stack_id

    def describe(self, stack_id: str) -> DeploymentState:
        """Query the current state of a deployment."""
        try:
            stacks = self.client.describe_stacks(StackName=stack_id)["Stacks"]
        except ClientError as e:
            raise ProvisioningError(_error_message(e), stack_id=stack_id) from e
        if not stacks:
            raise ProvisioningError("Stack with id %s does not exist" % stack_id, stack_id=stack_id)

        stack = stacks[0]
        status = get_deployment_status(stack["StackStatus"])
        outputs = {}
        if status == DeploymentStatus.COMPLETE:
            outputs = {o["OutputKey"]: o.get("OutputValue") for o in stack.get("Outputs", [])}
        return DeploymentState(
            stack_id=stack["StackId"],
            stack_name=stack["StackName"],
            status=status,
            stack_status=stack["StackStatus"],
            reason=stack.get("StackStatusReason"),
            outputs=outputs,
        )

    def wait(self, stack_id: str, timeout: float = None, interval: float = None) -> DeploymentState:
        """
        Poll the deployment until it reaches a terminal status.

        :param timeout: seconds to wait in total, defaults to ``SC_DEPLOY_TIMEOUT``
        :param interval: seconds between two polls, defaults to ``SC_POLL_INTERVAL``
        :return: the state of the completed deployment
        :raises ProvisioningError: if the deployment failed, with the reason reported by the orchestrator
        :raises DeploymentTimeout: if the deployment did not finish in time
        """
        timeout = config.SC_DEPLOY_TIMEOUT if timeout is None else timeout
        interval = config.SC_POLL_INTERVAL if interval is None else interval
        deadline = time.monotonic() + timeout

        while True:
            state = self.describe(stack_id)
            LOG.debug("Stack %s has status %s", stack_id, state.stack_status)
            if state.status == DeploymentStatus.COMPLETE:
                return state
            if state.status == DeploymentStatus.FAILED:
                reasons = self.get_failure_reasons(stack_id)
                reason = state.reason or (reasons[0] if reasons else "unknown reason")
                raise ProvisioningError(
                    redact("Stack %s failed with status %s: %s" % (stack_id, state.stack_status, reason)),
                    stack_id=stack_id,
                    status=state.stack_status,
                    reasons=[redact(r) for r in reasons],
                )
            if time.monotonic() + interval > deadline:
                raise DeploymentTimeout(
                    "Stack %s did not finish within %s seconds (status %s)"
                    % (stack_id, timeout, state.stack_status),
                    stack_id=stack_id,
                    status=state.stack_status,
                )
            time.sleep(interval)

    def get_failure_reasons(self, stack_id: str) -> list[str]:
        """Return the reasons of all failed resource operations of a deployment, oldest first."""
        try:
            events = self.client.describe_stack_events(StackName=stack_id)["StackEvents"]
        except ClientError as e:
            LOG.debug("Unable to describe events of stack %s: %s", stack_id, e)
            return []
        reasons = []
        # events are returned newest first
        for event in reversed(events):
            if not event.get("ResourceStatus", "").endswith("_FAILED"):
                continue
            reason = event.get("ResourceStatusReason")
            if reason:
                reasons.append("%s: %s" % (event.get("LogicalResourceId"), reason))
        return reasons

    def delete(self, stack_id: str) -> None:
        """Request the deletion of a deployment. Retained resources are kept by the orchestrator."""
        try:
            self.client.delete_stack(StackName=stack_id)
        except ClientError as e:
            raise ProvisioningError(_error_message(e), stack_id=stack_id) from e
        LOG.info("Requested deletion of stack %s", stack_id)

    def list_exports(self) -> dict[str, str]:
        """Return all exports of the account and region, as a mapping of export name to value."""
        result = {}
        try:
            for page in self.client.get_paginator("list_exports").paginate():
                for export in page.get("Exports", []):
                    result[export["Name"]] = export["Value"]
        except ClientError as e:
            raise ProvisioningError(_error_message(e)) from e
        return result


def _error_message(error: ClientError) -> str:
    details = error.response.get("Error", {})
    return redact(details.get("Message") or str(error))
