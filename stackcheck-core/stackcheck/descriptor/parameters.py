"""
Resolution of supplied parameter values against the parameter declarations of a descriptor.

Values are handled in their string form, the way the orchestrator receives them. Error messages name the parameter
and the violated constraint, and only include the offending value for parameters that are not NoEcho.
"""

import logging
import math
import re
from typing import Any, Iterator, Mapping, Optional

from stackcheck.descriptor.entities import ParameterDeclaration, ResolvedParameter
from stackcheck.descriptor.exceptions import (
    ConstraintViolation,
    MissingParameterError,
    ParameterValidationError,
    UnknownParameterError,
)
from stackcheck.descriptor.validations import to_parameter_string

LOG = logging.getLogger(__name__)

# integers and decimals, optionally signed and with an exponent
REGEX_NUMBER = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def normalize_parameter_values(supplied: Mapping[str, Any] | list | None) -> dict[str, str]:
    """
    Bring supplied parameter values into a ``{name: string value}`` mapping. Accepts a plain mapping as well as the
    ``[{"ParameterKey": ..., "ParameterValue": ...}]`` list form.
    """
    if not supplied:
        return {}
    if isinstance(supplied, list):
        result = {}
        for entry in supplied:
            if not isinstance(entry, dict) or "ParameterKey" not in entry:
                raise ParameterValidationError(
                    "Parameter entries must contain a ParameterKey", field="ParameterKey"
                )
            if entry.get("UsePreviousValue"):
                raise ParameterValidationError(
                    "Parameter %s: UsePreviousValue is only known to the orchestrator" % entry["ParameterKey"],
                    logical_name=entry["ParameterKey"],
                    field="UsePreviousValue",
                )
            result[entry["ParameterKey"]] = entry.get("ParameterValue")
        supplied = result
    return {str(k): (None if v is None else to_parameter_string(v)) for k, v in supplied.items()}


def resolve_parameters(
    declarations: Mapping[str, ParameterDeclaration], supplied: Mapping[str, Any] | list | None
) -> dict[str, ResolvedParameter]:
    """
    Resolve the effective value of every declared parameter, failing on the first problem.

    :param declarations: the parameter declarations of the descriptor
    :param supplied: the supplied values
    :return: the resolved parameters, in declaration order
    :raises ParameterValidationError: if a value is missing, unknown, or violates a constraint
    """
    result = {}
    for error_or_param in iter_resolved_parameters(declarations, supplied):
        if isinstance(error_or_param, ParameterValidationError):
            raise error_or_param
        result[error_or_param.name] = error_or_param
    return result


def iter_resolved_parameters(
    declarations: Mapping[str, ParameterDeclaration], supplied: Mapping[str, Any] | list | None
) -> Iterator[ResolvedParameter | ParameterValidationError]:
    """Yield a resolved parameter or an error for every unknown supplied and every declared parameter."""
    values = normalize_parameter_values(supplied)

    for name in values:
        if name not in declarations:
            yield UnknownParameterError(
                "Parameters: [%s] do not exist in the template" % name,
                logical_name=name,
                field="Parameters",
            )

    for name, declaration in declarations.items():
        value = values.get(name)
        from_default = False
        if value is None:
            if declaration.default is None:
                yield MissingParameterError(
                    "Parameters: [%s] must have values" % name,
                    logical_name=name,
                    field="Value",
                    constraint="Required",
                )
                continue
            value = declaration.default
            from_default = True

        error = check_parameter_value(declaration, value)
        if error:
            yield error
            continue

        LOG.debug(
            "Resolved parameter %s%s",
            name,
            " (default)" if from_default else "",
        )
        yield ResolvedParameter(
            name=name,
            value=split_list_value(value) if declaration.is_list_type else value,
            no_echo=declaration.no_echo,
            from_default=from_default,
            deferred=declaration.is_ssm_type,
        )


def split_list_value(value: str) -> list[str]:
    return [item.strip() for item in value.split(",")] if value else []


def check_parameter_value(declaration: ParameterDeclaration, value: str) -> Optional[ConstraintViolation]:
    """
    Check a single value against its declaration.

    :return: the first violated constraint, or None if the value is valid
    """
    items = split_list_value(value) if declaration.is_list_type else [value]

    if declaration.is_aws_specific_type and not declaration.is_ssm_type and not all(items):
        return _violation(declaration, value, "Type", "must not be empty for type %s" % declaration.type)
    if declaration.is_ssm_type and not value:
        return _violation(declaration, value, "Type", "must name an SSM parameter")

    for item in items:
        error = _check_item(declaration, value, item)
        if error:
            return error
    return None


def _check_item(declaration: ParameterDeclaration, value: str, item: str) -> Optional[ConstraintViolation]:
    if declaration.is_number_type:
        number = _parse_number(item)
        if number is None:
            return _violation(declaration, value, "Type", "must be a number")
        if declaration.min_value is not None and number < declaration.min_value:
            return _violation(
                declaration,
                value,
                "MinValue",
                "must be a number greater than or equal to %s" % _format_number(declaration.min_value),
            )
        if declaration.max_value is not None and number > declaration.max_value:
            return _violation(
                declaration,
                value,
                "MaxValue",
                "must be a number less than or equal to %s" % _format_number(declaration.max_value),
            )
    else:
        if declaration.min_length is not None and len(item) < declaration.min_length:
            return _violation(
                declaration,
                value,
                "MinLength",
                "must contain at least %s characters" % declaration.min_length,
            )
        if declaration.max_length is not None and len(item) > declaration.max_length:
            return _violation(
                declaration,
                value,
                "MaxLength",
                "must contain at most %s characters" % declaration.max_length,
            )
        if declaration.allowed_pattern is not None and not re.fullmatch(declaration.allowed_pattern, item):
            return _violation(
                declaration,
                value,
                "AllowedPattern",
                "must match pattern %s" % declaration.allowed_pattern,
            )

    if declaration.allowed_values is not None and item not in declaration.allowed_values:
        return _violation(
            declaration,
            value,
            "AllowedValues",
            "must be one of [%s]" % ", ".join(declaration.allowed_values),
        )
    return None


def _parse_number(value: str) -> Optional[float]:
    if not REGEX_NUMBER.fullmatch(value):
        return None
    number = float(value)
    return None if math.isinf(number) else number


def _format_number(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def _violation(
    declaration: ParameterDeclaration, value: str, constraint: str, requirement: str
) -> ConstraintViolation:
    # the value of a NoEcho parameter must never be part of the message
    if declaration.no_echo:
        subject = "Parameter '%s'" % declaration.name
    else:
        subject = "Parameter '%s' with value '%s'" % (declaration.name, value)
    message = "%s %s" % (subject, requirement)
    if declaration.constraint_description:
        message = "%s failed to satisfy constraint: %s" % (subject, declaration.constraint_description)
    return ConstraintViolation(
        message,
        logical_name=declaration.name,
        field=constraint,
        constraint=constraint,
    )
