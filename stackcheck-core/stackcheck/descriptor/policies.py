"""
Checks of the deletion, update-replace and creation policies of resources.

Deletion and retention behavior is made explicit: absent policies mean ``Delete``, stateful resources can be
required to declare their ``DeletionPolicy``, and resources whose ``DeletionPolicy`` and ``UpdateReplacePolicy``
disagree are reported as warnings.
"""

import logging
import re
from typing import Iterator

from stackcheck.constants import MAX_SIGNAL_TIMEOUT_SECONDS
from stackcheck.descriptor import resource_types
from stackcheck.descriptor.entities import DeletionPolicy, ResourceDeclaration
from stackcheck.descriptor.exceptions import PolicyError

LOG = logging.getLogger(__name__)

REGEX_ISO8601_DURATION = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


def parse_duration(value: str) -> int | None:
    """Parse an ISO-8601 duration like ``PT5M`` into seconds. Returns None for invalid durations."""
    match = REGEX_ISO8601_DURATION.match(str(value))
    if not match or not any(match.groupdict().values()) or str(value).endswith("T"):
        return None
    parts = {k: int(v or 0) for k, v in match.groupdict().items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def iter_policy_errors(resource: ResourceDeclaration, require_explicit_retention: bool) -> Iterator[PolicyError]:
    """Yield all policy errors of the given resource."""
    snapshot_policies = [
        key
        for key, policy in (
            ("DeletionPolicy", resource.deletion_policy),
            ("UpdateReplacePolicy", resource.update_replace_policy),
        )
        if policy.value == DeletionPolicy.SNAPSHOT.value
    ]
    for key in snapshot_policies:
        if resource.type not in resource_types.SNAPSHOT_RESOURCE_TYPES:
            yield PolicyError(
                "%s Snapshot is not supported for resource %s of type %s" % (key, resource.logical_id, resource.type),
                logical_name=resource.logical_id,
                field=key,
                constraint="SnapshotSupported",
            )

    if (
        require_explicit_retention
        and resource.type in resource_types.STATEFUL_RESOURCE_TYPES
        and not resource.explicit_deletion_policy
    ):
        yield PolicyError(
            "Resource %s of type %s must declare an explicit DeletionPolicy" % (resource.logical_id, resource.type),
            logical_name=resource.logical_id,
            field="DeletionPolicy",
            constraint="ExplicitRetention",
        )

    yield from _iter_creation_policy_errors(resource)


def _iter_creation_policy_errors(resource: ResourceDeclaration) -> Iterator[PolicyError]:
    if not resource.creation_policy:
        return
    signal = resource.creation_policy.get("ResourceSignal")
    if signal is None:
        return
    if not isinstance(signal, dict):
        yield PolicyError(
            "CreationPolicy.ResourceSignal of resource %s must be a mapping" % resource.logical_id,
            logical_name=resource.logical_id,
            field="CreationPolicy.ResourceSignal",
        )
        return

    timeout = signal.get("Timeout")
    if timeout is not None:
        seconds = parse_duration(timeout)
        if seconds is None:
            yield PolicyError(
                "CreationPolicy.ResourceSignal.Timeout '%s' of resource %s is not an ISO-8601 duration"
                % (timeout, resource.logical_id),
                logical_name=resource.logical_id,
                field="CreationPolicy.ResourceSignal.Timeout",
                constraint="Duration",
            )
        elif seconds > MAX_SIGNAL_TIMEOUT_SECONDS:
            yield PolicyError(
                "CreationPolicy.ResourceSignal.Timeout of resource %s exceeds the maximum of 12 hours"
                % resource.logical_id,
                logical_name=resource.logical_id,
                field="CreationPolicy.ResourceSignal.Timeout",
                constraint="MaxDuration",
            )

    count = signal.get("Count")
    if count is not None:
        try:
            valid = not isinstance(count, bool) and int(str(count)) > 0
        except ValueError:
            valid = False
        if not valid:
            yield PolicyError(
                "CreationPolicy.ResourceSignal.Count of resource %s must be a positive integer" % resource.logical_id,
                logical_name=resource.logical_id,
                field="CreationPolicy.ResourceSignal.Count",
                constraint="PositiveInteger",
            )


def get_policy_warnings(resource: ResourceDeclaration) -> list[str]:
    """Describe inconsistencies of the retention behavior of a resource, which are valid but likely unintended."""
    warnings = []
    if resource.deletion_policy.value != resource.update_replace_policy.value and (
        resource.explicit_deletion_policy or resource.explicit_update_replace_policy
    ):
        warnings.append(
            "Resource %s has DeletionPolicy %s but UpdateReplacePolicy %s"
            % (resource.logical_id, resource.deletion_policy.value, resource.update_replace_policy.value)
        )
    if (
        resource.type in resource_types.STATEFUL_RESOURCE_TYPES
        and not resource.explicit_deletion_policy
    ):
        warnings.append(
            "Stateful resource %s has no explicit DeletionPolicy and is deleted with the stack" % resource.logical_id
        )
    return warnings
