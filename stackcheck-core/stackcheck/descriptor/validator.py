"""
Validation of a deployment descriptor against supplied parameter values.

Validation is pure: it does not contact any service, does not modify its inputs, and yields identical results for
identical inputs. The phases run in a fixed order (structure, parameters, references, ordering, policies).
"""

import logging
from typing import Any, Mapping, Optional

from stackcheck import config
from stackcheck.descriptor.entities import Descriptor, Reference, ReferenceKind, ResolvedDescriptor
from stackcheck.descriptor.exceptions import DescriptorError, SchemaError
from stackcheck.descriptor.parameters import iter_resolved_parameters
from stackcheck.descriptor.policies import get_policy_warnings, iter_policy_errors
from stackcheck.descriptor.resource_ordering import order_resources
from stackcheck.descriptor.template_preparer import parse_template
from stackcheck.descriptor.template_utils import ReferenceResolver
from stackcheck.descriptor.validations import validate_template_structure

LOG = logging.getLogger(__name__)


class _ValidationRun:
    """Collects the errors of a single validation, or raises the first one."""

    def __init__(self, fail_fast: bool):
        self.fail_fast = fail_fast
        self.errors: list[DescriptorError] = []

    def report(self, error: DescriptorError):
        if self.fail_fast:
            raise error
        self.errors.append(error)


class DescriptorValidator:
    """
    Validates descriptors. Options default to the configuration:

    - ``require_explicit_retention``: stateful resources must declare a ``DeletionPolicy``
    - ``strict_resource_types``: resource types outside the known taxonomy are rejected
    - ``exports``: known export names and values; when given, imports must name one of them
    """

    def __init__(
        self,
        require_explicit_retention: bool = None,
        strict_resource_types: bool = None,
        exports: Optional[Mapping[str, str]] = None,
    ):
        self.require_explicit_retention = (
            config.REQUIRE_EXPLICIT_RETENTION
            if require_explicit_retention is None
            else require_explicit_retention
        )
        self.strict_resource_types = (
            config.STRICT_RESOURCE_TYPES if strict_resource_types is None else strict_resource_types
        )
        self.exports = dict(exports) if exports is not None else None

    def load(self, template: str | bytes | dict) -> Descriptor:
        """Parse (if needed) and structurally validate a descriptor, without looking at parameter values."""
        parsed = template if isinstance(template, dict) else parse_template(template)
        return validate_template_structure(parsed, strict_resource_types=self.strict_resource_types)

    def validate(
        self, template: str | bytes | dict, parameters: Mapping[str, Any] | list | None = None
    ) -> ResolvedDescriptor:
        """
        Validate the descriptor with the given parameter values.

        :param template: the descriptor body (JSON/YAML text) or the already parsed document
        :param parameters: the supplied parameter values
        :return: the resolved descriptor
        :raises DescriptorError: the first problem found
        """
        return self._run(template, parameters, _ValidationRun(fail_fast=True))

    def collect_errors(
        self, template: str | bytes | dict, parameters: Mapping[str, Any] | list | None = None
    ) -> list[DescriptorError]:
        """
        Validate the descriptor and return all errors instead of raising the first one. Structural errors stop the
        validation, since nothing else can be checked on a malformed document.
        """
        run = _ValidationRun(fail_fast=False)
        try:
            self._run(template, parameters, run)
        except DescriptorError as e:
            # raised while loading the structure, or by a malformed intrinsic function
            run.errors.append(e)
        return run.errors

    def _run(
        self, template: str | bytes | dict, parameters: Mapping[str, Any] | list | None, run: _ValidationRun
    ) -> Optional[ResolvedDescriptor]:
        descriptor = self.load(template)

        resolved_parameters = {}
        for result in iter_resolved_parameters(descriptor.parameters, parameters):
            if isinstance(result, DescriptorError):
                run.report(result)
            else:
                resolved_parameters[result.name] = result

        resolver = ReferenceResolver(descriptor, resolved_parameters, exports=self.exports)
        references: list[Reference] = []
        for name in descriptor.conditions:
            references += self._check(run, lambda: resolver.check_condition(name))
        for logical_id in descriptor.resources:
            references += self._check(run, lambda: resolver.check_resource(logical_id))
        for name in descriptor.outputs:
            references += self._check(run, lambda: resolver.check_output(name))

        creation_order = ()
        try:
            creation_order = tuple(order_resources(descriptor.template["Resources"]).keys())
        except DescriptorError as e:
            run.report(e)

        policy_warnings = []
        for resource in descriptor.resources.values():
            for error in iter_policy_errors(resource, self.require_explicit_retention):
                run.report(error)
            policy_warnings += get_policy_warnings(resource)
        for warning in policy_warnings:
            LOG.warning(warning)

        if run.errors:
            return None

        resources = {
            logical_id: resolver.substitute(body)
            for logical_id, body in descriptor.template["Resources"].items()
        }
        outputs = {
            name: resolver.substitute(body) for name, body in (descriptor.template.get("Outputs") or {}).items()
        }
        imports = tuple(
            dict.fromkeys(ref.target for ref in references if ref.kind == ReferenceKind.IMPORT)
        )

        LOG.debug(
            "Validated descriptor with %s parameters, %s resources and %s outputs",
            len(resolved_parameters),
            len(resources),
            len(outputs),
        )
        return ResolvedDescriptor(
            descriptor=descriptor,
            parameters=resolved_parameters,
            resources=resources,
            outputs=outputs,
            creation_order=creation_order,
            references=tuple(references),
            imports=imports,
            policy_warnings=tuple(policy_warnings),
        )

    @staticmethod
    def _check(run: _ValidationRun, check) -> list[Reference]:
        try:
            return check()
        except SchemaError:
            raise
        except DescriptorError as e:
            run.report(e)
            return []


def validate_descriptor(
    template: str | bytes | dict,
    parameters: Mapping[str, Any] | list | None = None,
    **kwargs,
) -> ResolvedDescriptor:
    """Shortcut for ``DescriptorValidator(**kwargs).validate(template, parameters)``."""
    return DescriptorValidator(**kwargs).validate(template, parameters)
