"""
Structural validation of a parsed descriptor, turning the raw document into a :class:`Descriptor`.

Only the shape of the document is checked here. Parameter values, references and policies are checked by the
validator once the structure is known to be sound.
"""

import copy
import logging
import re
from typing import Any, Callable

from stackcheck import config
from stackcheck.constants import TEMPLATE_FORMAT_VERSIONS
from stackcheck.descriptor import resource_types
from stackcheck.descriptor.entities import (
    LIST_TYPE_REGEX,
    SSM_TYPE_REGEX,
    DeletionPolicy,
    Descriptor,
    OutputDeclaration,
    ParameterDeclaration,
    ResourceDeclaration,
    UpdateReplacePolicy,
)
from stackcheck.descriptor.exceptions import DuplicateLogicalNameError, PolicyError, SchemaError
from stackcheck.utils.collections import ensure_list

LOG = logging.getLogger(__name__)

TOP_LEVEL_SECTIONS = (
    "AWSTemplateFormatVersion",
    "Conditions",
    "Description",
    "Mappings",
    "Metadata",
    "Outputs",
    "Parameters",
    "Resources",
    "Rules",
    "Transform",
)

PARAMETER_ATTRIBUTES = (
    "AllowedPattern",
    "AllowedValues",
    "ConstraintDescription",
    "Default",
    "Description",
    "MaxLength",
    "MaxValue",
    "MinLength",
    "MinValue",
    "NoEcho",
    "Type",
)

RESOURCE_ATTRIBUTES = (
    "Condition",
    "CreationPolicy",
    "DeletionPolicy",
    "DependsOn",
    "Metadata",
    "Properties",
    "Type",
    "UpdatePolicy",
    "UpdateReplacePolicy",
    "Version",
)

OUTPUT_ATTRIBUTES = ("Condition", "Description", "Export", "Value")

PRIMITIVE_PARAMETER_TYPES = ("String", "Number", "CommaDelimitedList")

LOGICAL_ID_REGEX = re.compile(r"^[A-Za-z0-9]+$")
MAX_LOGICAL_ID_LENGTH = 255


def validate_template_structure(template: dict, strict_resource_types: bool = None) -> Descriptor:
    """
    Check the structure of the given parsed descriptor and build its entities.

    :param template: the parsed descriptor, as returned by ``parse_template``
    :param strict_resource_types: reject resource types outside the known taxonomy (defaults to the config)
    :return: the descriptor entities
    :raises SchemaError: if the structure is invalid
    """
    template = copy.deepcopy(template)

    for section in template:
        if section not in TOP_LEVEL_SECTIONS:
            raise SchemaError(
                "Template format error: Invalid template property or properties [%s]" % section,
                field=section,
            )

    format_version = template.get("AWSTemplateFormatVersion")
    if format_version is not None and str(format_version) not in TEMPLATE_FORMAT_VERSIONS:
        raise SchemaError(
            "Template format error: Unsupported template format version %s" % format_version,
            field="AWSTemplateFormatVersion",
        )

    description = template.get("Description")
    if description is not None and not isinstance(description, str):
        raise SchemaError("Template format error: Description must be a string", field="Description")

    parameters = _parse_section(template, "Parameters", _parse_parameter)
    if strict_resource_types is None:
        strict_resource_types = config.STRICT_RESOURCE_TYPES
    resources = _parse_section(
        template,
        "Resources",
        lambda logical_id, body: _parse_resource(logical_id, body, strict_resource_types),
    )
    outputs = _parse_section(template, "Outputs", _parse_output)
    if not resources:
        raise SchemaError(
            "Template format error: At least one Resources member must be defined.", field="Resources"
        )

    for name in parameters:
        if name in resources:
            raise DuplicateLogicalNameError(
                "Template format error: logical name %s is used for a parameter and a resource" % name,
                logical_name=name,
                field="Resources",
            )

    mappings = _get_mapping(template, "Mappings")
    for map_name, top_level in mappings.items():
        if not isinstance(top_level, dict) or not all(isinstance(v, dict) for v in top_level.values()):
            raise SchemaError(
                "Template format error: Mapping %s must be a two-level mapping of keys" % map_name,
                logical_name=map_name,
                field="Mappings",
            )

    return Descriptor(
        resources=resources,
        parameters=parameters,
        outputs=outputs,
        mappings=mappings,
        conditions=_get_mapping(template, "Conditions"),
        metadata=_get_mapping(template, "Metadata"),
        description=description,
        format_version=str(format_version) if format_version is not None else None,
        transform=template.get("Transform"),
        template=template,
    )


def _get_mapping(template: dict, section: str) -> dict:
    value = template.get(section)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaError(
            "Template format error: %s must be a mapping" % section,
            field=section,
        )
    return value


def _parse_section(template: dict, section: str, parse: Callable[[str, dict], Any]) -> dict:
    result = {}
    for logical_id, body in _get_mapping(template, section).items():
        _check_logical_id(logical_id, section)
        if not isinstance(body, dict):
            raise SchemaError(
                "Template format error: %s member %s must be a mapping" % (section, logical_id),
                logical_name=logical_id,
                field=section,
            )
        result[logical_id] = parse(logical_id, body)
    return result


def _check_logical_id(logical_id: str, section: str):
    if (
        not isinstance(logical_id, str)
        or not LOGICAL_ID_REGEX.match(logical_id)
        or len(logical_id) > MAX_LOGICAL_ID_LENGTH
    ):
        raise SchemaError(
            "Template format error: %s logical ID '%s' must be alphanumeric" % (section, logical_id),
            logical_name=str(logical_id),
            field=section,
        )


def _check_attributes(logical_id: str, body: dict, allowed: tuple[str, ...], section: str):
    unknown = [key for key in body if key not in allowed]
    if unknown:
        raise SchemaError(
            "Template format error: Unrecognized attribute(s) %s in %s %s"
            % (", ".join(map(str, unknown)), section, logical_id),
            logical_name=logical_id,
            field=str(unknown[0]),
        )


# Parameters


def is_valid_parameter_type(param_type: str) -> bool:
    if param_type in PRIMITIVE_PARAMETER_TYPES:
        return True
    ssm_match = SSM_TYPE_REGEX.match(param_type)
    if ssm_match:
        item = ssm_match.group("item")
        list_match = LIST_TYPE_REGEX.match(item)
        item = list_match.group("item") if list_match else item
        return item in ("String", "CommaDelimitedList") or item.startswith("AWS::")
    list_match = LIST_TYPE_REGEX.match(param_type)
    if list_match:
        item = list_match.group("item")
        return item == "Number" or item.startswith("AWS::")
    return param_type.startswith("AWS::")


def to_parameter_string(value: Any) -> str:
    """Convert a value to the string form used for parameter values (e.g. ``True`` -> ``"true"``)."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(to_parameter_string(v) for v in value)
    return str(value)


def _int_attribute(logical_id: str, body: dict, key: str) -> int | None:
    value = body.get(key)
    if value is None:
        return None
    result = None
    if not isinstance(value, bool):
        try:
            result = int(str(value))
        except ValueError:
            pass
    if result is None or result < 0:
        raise SchemaError(
            "Template format error: %s of parameter %s must be a non-negative integer" % (key, logical_id),
            logical_name=logical_id,
            field=key,
        )
    return result


def _number_attribute(logical_id: str, body: dict, key: str) -> float | None:
    value = body.get(key)
    if value is None:
        return None
    try:
        if isinstance(value, bool):
            raise ValueError(value)
        return float(str(value))
    except ValueError:
        raise SchemaError(
            "Template format error: %s of parameter %s must be a number" % (key, logical_id),
            logical_name=logical_id,
            field=key,
        )


def _parse_parameter(logical_id: str, body: dict) -> ParameterDeclaration:
    _check_attributes(logical_id, body, PARAMETER_ATTRIBUTES, "parameter")

    param_type = body.get("Type")
    if not isinstance(param_type, str) or not param_type:
        raise SchemaError(
            "Template format error: Every Parameters object must contain a Type member.",
            logical_name=logical_id,
            field="Type",
        )
    if not is_valid_parameter_type(param_type):
        raise SchemaError(
            "Template format error: Unrecognized parameter type: %s" % param_type,
            logical_name=logical_id,
            field="Type",
        )

    no_echo = body.get("NoEcho", False)
    if isinstance(no_echo, str) and no_echo.lower() in ("true", "false"):
        no_echo = no_echo.lower() == "true"
    if not isinstance(no_echo, bool):
        raise SchemaError(
            "Template format error: NoEcho of parameter %s must be a boolean" % logical_id,
            logical_name=logical_id,
            field="NoEcho",
        )

    allowed_values = body.get("AllowedValues")
    if allowed_values is not None:
        if not isinstance(allowed_values, list) or any(isinstance(v, (dict, list)) for v in allowed_values):
            raise SchemaError(
                "Template format error: AllowedValues of parameter %s must be a list of values" % logical_id,
                logical_name=logical_id,
                field="AllowedValues",
            )
        allowed_values = tuple(to_parameter_string(v) for v in allowed_values)

    allowed_pattern = body.get("AllowedPattern")
    if allowed_pattern is not None:
        allowed_pattern = str(allowed_pattern)
        try:
            re.compile(allowed_pattern)
        except re.error as e:
            raise SchemaError(
                "Template format error: AllowedPattern of parameter %s is not a valid regular expression: %s"
                % (logical_id, e),
                logical_name=logical_id,
                field="AllowedPattern",
            )

    min_length = _int_attribute(logical_id, body, "MinLength")
    max_length = _int_attribute(logical_id, body, "MaxLength")
    if min_length is not None and max_length is not None and min_length > max_length:
        raise SchemaError(
            "Template format error: MinLength of parameter %s is greater than MaxLength" % logical_id,
            logical_name=logical_id,
            field="MinLength",
        )
    min_value = _number_attribute(logical_id, body, "MinValue")
    max_value = _number_attribute(logical_id, body, "MaxValue")
    if min_value is not None and max_value is not None and min_value > max_value:
        raise SchemaError(
            "Template format error: MinValue of parameter %s is greater than MaxValue" % logical_id,
            logical_name=logical_id,
            field="MinValue",
        )

    default = body.get("Default")
    if isinstance(default, dict):
        raise SchemaError(
            "Template format error: Default of parameter %s must be a literal value" % logical_id,
            logical_name=logical_id,
            field="Default",
        )

    return ParameterDeclaration(
        name=logical_id,
        type=param_type,
        description=body.get("Description"),
        default=to_parameter_string(default) if default is not None else None,
        no_echo=no_echo,
        allowed_values=allowed_values,
        allowed_pattern=allowed_pattern,
        min_length=min_length,
        max_length=max_length,
        min_value=min_value,
        max_value=max_value,
        constraint_description=body.get("ConstraintDescription"),
    )


# Resources


def _parse_resource(logical_id: str, body: dict, strict_resource_types: bool) -> ResourceDeclaration:
    _check_attributes(logical_id, body, RESOURCE_ATTRIBUTES, "resource")

    resource_type = body.get("Type")
    if not isinstance(resource_type, str) or not resource_type:
        raise SchemaError(
            "Template format error: [/Resources/%s] Every Resources object must contain a Type member."
            % logical_id,
            logical_name=logical_id,
            field="Type",
        )
    if not resource_types.is_known_type(resource_type) and not resource_types.is_custom_type(resource_type):
        if strict_resource_types:
            raise SchemaError(
                "Template format error: Unrecognized resource type %s" % resource_type,
                logical_name=logical_id,
                field="Type",
            )
        LOG.warning("Resource %s has type %s outside the known taxonomy", logical_id, resource_type)

    properties = body.get("Properties")
    if properties is None:
        properties = {}
    if not isinstance(properties, dict):
        raise SchemaError(
            "Template format error: Properties of resource %s must be a mapping" % logical_id,
            logical_name=logical_id,
            field="Properties",
        )

    depends_on = ensure_list(body.get("DependsOn")) or []
    if not all(isinstance(dep, str) for dep in depends_on):
        raise SchemaError(
            "Template format error: DependsOn of resource %s must be a name or a list of names" % logical_id,
            logical_name=logical_id,
            field="DependsOn",
        )

    condition = body.get("Condition")
    if condition is not None and not isinstance(condition, str):
        raise SchemaError(
            "Template format error: Condition of resource %s must be a condition name" % logical_id,
            logical_name=logical_id,
            field="Condition",
        )

    metadata = body.get("Metadata") or {}
    if not isinstance(metadata, dict):
        raise SchemaError(
            "Template format error: Metadata of resource %s must be a mapping" % logical_id,
            logical_name=logical_id,
            field="Metadata",
        )

    for key in ("CreationPolicy", "UpdatePolicy"):
        if body.get(key) is not None and not isinstance(body[key], dict):
            raise SchemaError(
                "Template format error: %s of resource %s must be a mapping" % (key, logical_id),
                logical_name=logical_id,
                field=key,
            )

    return ResourceDeclaration(
        logical_id=logical_id,
        type=resource_type,
        properties=properties,
        deletion_policy=_parse_policy(logical_id, body, "DeletionPolicy", DeletionPolicy),
        update_replace_policy=_parse_policy(logical_id, body, "UpdateReplacePolicy", UpdateReplacePolicy),
        explicit_deletion_policy="DeletionPolicy" in body,
        explicit_update_replace_policy="UpdateReplacePolicy" in body,
        depends_on=tuple(depends_on),
        condition=condition,
        metadata=metadata,
        creation_policy=body.get("CreationPolicy"),
        update_policy=body.get("UpdatePolicy"),
    )


def _parse_policy(logical_id: str, body: dict, key: str, policy_type):
    value = body.get(key)
    if value is None:
        return policy_type.DELETE
    try:
        return policy_type(value)
    except ValueError:
        raise PolicyError(
            "Invalid %s '%s' for resource %s, must be one of [%s]"
            % (key, value, logical_id, ", ".join(p.value for p in policy_type)),
            logical_name=logical_id,
            field=key,
            constraint="AllowedValues",
        )


# Outputs


def _parse_output(logical_id: str, body: dict) -> OutputDeclaration:
    _check_attributes(logical_id, body, OUTPUT_ATTRIBUTES, "output")
    if "Value" not in body or body["Value"] is None:
        raise SchemaError(
            "Template format error: Every Outputs member must contain a Value object",
            logical_name=logical_id,
            field="Value",
        )

    export = body.get("Export")
    export_name = None
    if export is not None:
        if not isinstance(export, dict) or "Name" not in export:
            raise SchemaError(
                "Template format error: Export of output %s must contain a Name" % logical_id,
                logical_name=logical_id,
                field="Export",
            )
        export_name = export["Name"]

    condition = body.get("Condition")
    if condition is not None and not isinstance(condition, str):
        raise SchemaError(
            "Template format error: Condition of output %s must be a condition name" % logical_id,
            logical_name=logical_id,
            field="Condition",
        )

    return OutputDeclaration(
        name=logical_id,
        value=body["Value"],
        description=body.get("Description"),
        export_name=export_name,
        condition=condition,
    )
