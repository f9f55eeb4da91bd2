"""
Discovery, checking and substitution of references inside descriptor bodies.

A reference is any ``Ref``, ``Fn::GetAtt``, ``Fn::Sub`` placeholder, ``Fn::ImportValue``, ``Fn::FindInMap``,
``Fn::If`` or ``Condition`` occurrence. Discovery is purely syntactic (``iter_references``); the
``ReferenceResolver`` checks every occurrence against the declared entities of a descriptor and substitutes the
values of parameters where they are known.
"""

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional

from stackcheck.constants import PSEUDO_PARAMETERS
from stackcheck.descriptor import resource_types
from stackcheck.descriptor.entities import Descriptor, Reference, ReferenceKind, ResolvedParameter
from stackcheck.descriptor.exceptions import SchemaError, UnresolvedReferenceError

LOG = logging.getLogger(__name__)

# ${Name}, ${Resource.Attribute}, but not the ${!Literal} escape
REGEX_SUB_PLACEHOLDER = re.compile(r"\$\{([^!}][^}]*)\}")
# a placeholder or a ${!Literal} escape
REGEX_SUB_TOKEN = re.compile(r"\$\{(![^}]*|[^!}][^}]*)\}")

INTRINSIC_FUNCTIONS = (
    "Condition",
    "Fn::And",
    "Fn::Base64",
    "Fn::Cidr",
    "Fn::Equals",
    "Fn::FindInMap",
    "Fn::GetAtt",
    "Fn::GetAZs",
    "Fn::If",
    "Fn::ImportValue",
    "Fn::Join",
    "Fn::Length",
    "Fn::Not",
    "Fn::Or",
    "Fn::Select",
    "Fn::Split",
    "Fn::Sub",
    "Fn::ToJsonString",
    "Ref",
)


@dataclass(frozen=True)
class RawReference:
    """A syntactic reference, not yet checked against the declared entities."""

    function: str
    target: Any
    path: str
    attribute: Optional[str] = None
    keys: tuple = ()


def get_intrinsic_function(value: Any) -> Optional[str]:
    """Return the name of the intrinsic function if `value` is a function call (a dict with a single key)."""
    if isinstance(value, dict) and len(value) == 1:
        key = next(iter(value))
        if key == "Condition" and not isinstance(value[key], str):
            # e.g. the Condition block of an IAM policy statement
            return None
        if key in INTRINSIC_FUNCTIONS:
            return key
    return None


def _join_path(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path or '.'}[{key}]"
    return f"{path}.{key}" if path else str(key)


def iter_references(value: Any, path: str = "") -> Iterator[RawReference]:
    """
    Recursively yield all references in the given value.

    :param value: a property value, resource body or output body
    :param path: the path of `value`, used for error reporting
    :raises SchemaError: if an intrinsic function is malformed
    """
    function = get_intrinsic_function(value)
    if function is None:
        if isinstance(value, dict):
            for key, item in value.items():
                yield from iter_references(item, _join_path(path, key))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                yield from iter_references(item, _join_path(path, i))
        return

    argument = value[function]
    fn_path = _join_path(path, function)

    if function == "Ref":
        if not isinstance(argument, str):
            raise _malformed(fn_path, "Ref must reference a logical name")
        yield RawReference(function, argument, fn_path)

    elif function == "Condition":
        if not isinstance(argument, str):
            raise _malformed(fn_path, "Condition must reference a condition name")
        yield RawReference(function, argument, fn_path)

    elif function == "Fn::GetAtt":
        if isinstance(argument, str):
            argument = argument.split(".", 1)
        if not isinstance(argument, list) or len(argument) != 2 or not isinstance(argument[0], str):
            raise _malformed(fn_path, "Fn::GetAtt requires a resource name and an attribute name")
        attribute = argument[1]
        if isinstance(attribute, str):
            yield RawReference(function, argument[0], fn_path, attribute=attribute)
        else:
            # the attribute name itself may be computed, e.g. via Ref
            yield RawReference(function, argument[0], fn_path)
            yield from iter_references(attribute, _join_path(fn_path, 1))

    elif function == "Fn::Sub":
        yield from _iter_sub_references(argument, fn_path)

    elif function == "Fn::ImportValue":
        if isinstance(argument, (list, bool)) or argument is None:
            raise _malformed(fn_path, "Fn::ImportValue requires an export name")
        yield RawReference(function, argument, fn_path)
        yield from iter_references(argument, fn_path)

    elif function == "Fn::FindInMap":
        if not isinstance(argument, list) or len(argument) not in (3, 4):
            raise _malformed(fn_path, "Fn::FindInMap requires a map name, a top level key and a second level key")
        yield RawReference(function, argument[0], fn_path, keys=tuple(argument[1:3]))
        for i, item in enumerate(argument):
            yield from iter_references(item, _join_path(fn_path, i))

    elif function == "Fn::If":
        if not isinstance(argument, list) or len(argument) != 3 or not isinstance(argument[0], str):
            raise _malformed(fn_path, "Fn::If requires a condition name and two values")
        yield RawReference(function, argument[0], fn_path)
        yield from iter_references(argument[1], _join_path(fn_path, 1))
        yield from iter_references(argument[2], _join_path(fn_path, 2))

    else:
        yield from iter_references(argument, fn_path)


def _iter_sub_references(argument: Any, path: str) -> Iterator[RawReference]:
    if isinstance(argument, str):
        template, variables = argument, {}
    elif (
        isinstance(argument, list)
        and len(argument) == 2
        and isinstance(argument[0], str)
        and isinstance(argument[1], dict)
    ):
        template, variables = argument
    else:
        raise _malformed(path, "Fn::Sub requires a string or a string and a map of variables")

    for name, variable in variables.items():
        yield from iter_references(variable, _join_path(_join_path(path, 1), name))

    for placeholder in REGEX_SUB_PLACEHOLDER.findall(template):
        placeholder = placeholder.strip()
        if placeholder in variables:
            continue
        if "." in placeholder:
            target, attribute = placeholder.split(".", 1)
            yield RawReference("Fn::Sub", target, path, attribute=attribute)
        else:
            yield RawReference("Fn::Sub", placeholder, path)


def _malformed(path: str, message: str) -> SchemaError:
    return SchemaError("Template error: %s (at %s)" % (message, path), field=path)


class ReferenceResolver:
    """Checks the references of a descriptor and substitutes parameter values."""

    descriptor: Descriptor
    parameters: Mapping[str, ResolvedParameter]
    exports: Optional[Mapping[str, str]]

    def __init__(
        self,
        descriptor: Descriptor,
        parameters: Mapping[str, ResolvedParameter],
        exports: Optional[Mapping[str, str]] = None,
    ):
        self.descriptor = descriptor
        self.parameters = parameters
        self.exports = exports

    # checking

    def check_resource(self, logical_id: str) -> list[Reference]:
        resource = self.descriptor.resources[logical_id]
        references = []
        if resource.condition is not None:
            references.append(self._check_condition_name(logical_id, "Condition", resource.condition))
        for dependency in resource.depends_on:
            if dependency not in self.descriptor.resources:
                raise UnresolvedReferenceError(
                    "Template format error: Unresolved resource dependencies [%s] in the Resources block of "
                    "the template" % dependency,
                    logical_name=logical_id,
                    field="DependsOn",
                    constraint="ResourceExists",
                )
            references.append(Reference(logical_id, "DependsOn", ReferenceKind.RESOURCE, dependency))

        for section, body in (
            ("Properties", resource.properties),
            ("Metadata", resource.metadata),
            ("CreationPolicy", resource.creation_policy),
            ("UpdatePolicy", resource.update_policy),
        ):
            if body:
                references += self.check_value(logical_id, body, section)
        return references

    def check_output(self, name: str) -> list[Reference]:
        output = self.descriptor.outputs[name]
        source = f"Outputs.{name}"
        references = []
        if output.condition is not None:
            references.append(self._check_condition_name(source, "Condition", output.condition))
        references += self.check_value(source, output.value, "Value")
        if output.export_name is not None:
            references += self.check_value(source, output.export_name, "Export.Name")
        return references

    def check_condition(self, name: str) -> list[Reference]:
        """Conditions may only use parameters, pseudo parameters, mappings and other conditions."""
        source = f"Conditions.{name}"
        references = self.check_value(source, self.descriptor.conditions[name], "")
        for reference in references:
            if reference.kind in (ReferenceKind.RESOURCE, ReferenceKind.ATTRIBUTE):
                raise UnresolvedReferenceError(
                    "Template error: Condition %s cannot reference resource %s" % (name, reference.target),
                    logical_name=name,
                    field=reference.field,
                    constraint="ConditionReference",
                )
        return references

    def check_value(self, source: str, value: Any, path: str) -> list[Reference]:
        """
        Check all references in `value`.

        :param source: the logical name of the entity containing the value
        :param value: the value to check
        :param path: the field of `value` inside the entity
        :return: the checked references
        :raises UnresolvedReferenceError: on the first reference which does not resolve
        """
        return [self._check(source, raw) for raw in iter_references(value, path)]

    def _check(self, source: str, raw: RawReference) -> Reference:
        if raw.function == "Ref":
            return self._check_ref(source, raw)
        if raw.function == "Fn::GetAtt":
            return self._check_get_att(source, raw)
        if raw.function == "Fn::Sub":
            if raw.attribute is not None and raw.target in self.descriptor.resources:
                return self._check_get_att(source, raw)
            if raw.attribute is not None:
                raw = RawReference(raw.function, f"{raw.target}.{raw.attribute}", raw.path)
            return self._check_ref(source, raw)
        if raw.function == "Fn::ImportValue":
            return self._check_import(source, raw)
        if raw.function == "Fn::FindInMap":
            return self._check_find_in_map(source, raw)
        return self._check_condition_name(source, raw.path, raw.target)

    def _check_ref(self, source: str, raw: RawReference) -> Reference:
        target = raw.target
        if target in PSEUDO_PARAMETERS:
            kind = ReferenceKind.PSEUDO
        elif target in self.descriptor.parameters:
            kind = ReferenceKind.PARAMETER
        elif target in self.descriptor.resources:
            kind = ReferenceKind.RESOURCE
        else:
            raise UnresolvedReferenceError(
                "Template format error: Unresolved resource dependencies [%s] in the %s block of the template"
                % (target, "Outputs" if source.startswith("Outputs.") else "Resources"),
                logical_name=source,
                field=raw.path,
                constraint="ReferenceExists",
            )
        return Reference(source, raw.path, kind, target)

    def _check_get_att(self, source: str, raw: RawReference) -> Reference:
        target = raw.target
        resource = self.descriptor.resources.get(target)
        if resource is None:
            raise UnresolvedReferenceError(
                "Template error: instance of Fn::GetAtt references undefined resource %s" % target,
                logical_name=source,
                field=raw.path,
                constraint="ReferenceExists",
            )
        if raw.attribute is not None and not resource_types.has_attribute(resource.type, raw.attribute):
            raise UnresolvedReferenceError(
                "Template error: resource %s of type %s does not support attribute %s"
                % (target, resource.type, raw.attribute),
                logical_name=source,
                field=raw.path,
                constraint="AttributeExists",
            )
        return Reference(source, raw.path, ReferenceKind.ATTRIBUTE, target, raw.attribute)

    def _check_import(self, source: str, raw: RawReference) -> Reference:
        name = self.render_import_name(raw.target)
        if name is not None and self.exports is not None and name not in self.exports:
            raise UnresolvedReferenceError(
                "No export named %s found" % name,
                logical_name=source,
                field=raw.path,
                constraint="ExportExists",
            )
        return Reference(source, raw.path, ReferenceKind.IMPORT, name or self.describe_import(raw.target))

    def _check_find_in_map(self, source: str, raw: RawReference) -> Reference:
        map_name = raw.target
        if not isinstance(map_name, str):
            # computed map name, only known at deploy time
            return Reference(source, raw.path, ReferenceKind.MAPPING, self.describe_import(map_name))
        mapping = self.descriptor.mappings.get(map_name)
        if mapping is None:
            raise UnresolvedReferenceError(
                "Template error: Mapping named '%s' is not present in the 'Mappings' section of template"
                % map_name,
                logical_name=source,
                field=raw.path,
                constraint="MappingExists",
            )
        top_key, second_key = raw.keys
        if isinstance(top_key, str) and top_key not in mapping:
            raise UnresolvedReferenceError(
                "Template error: Unable to get mapping for %s::%s" % (map_name, top_key),
                logical_name=source,
                field=raw.path,
                constraint="MappingExists",
            )
        if isinstance(top_key, str) and isinstance(second_key, str) and second_key not in mapping[top_key]:
            raise UnresolvedReferenceError(
                "Template error: Unable to get mapping for %s::%s::%s" % (map_name, top_key, second_key),
                logical_name=source,
                field=raw.path,
                constraint="MappingExists",
            )
        return Reference(source, raw.path, ReferenceKind.MAPPING, map_name)

    def _check_condition_name(self, source: str, path: str, name: str) -> Reference:
        if name not in self.descriptor.conditions:
            raise UnresolvedReferenceError(
                "Template format error: Unresolved condition dependency %s" % name,
                logical_name=source,
                field=path,
                constraint="ConditionExists",
            )
        return Reference(source, path, ReferenceKind.CONDITION, name)

    # imports

    def render_import_name(self, name_expression: Any) -> Optional[str]:
        """Render the export name of an import, if it only depends on substitutable parameters."""
        rendered = self.substitute(name_expression)
        return rendered if isinstance(rendered, str) else None

    @staticmethod
    def describe_import(name_expression: Any) -> str:
        """A readable form of an import name which cannot be rendered yet (e.g. ``${Secret}-VPCID``)."""
        if isinstance(name_expression, dict) and get_intrinsic_function(name_expression) == "Fn::Sub":
            argument = name_expression["Fn::Sub"]
            return argument if isinstance(argument, str) else argument[0]
        if isinstance(name_expression, dict) and get_intrinsic_function(name_expression) == "Ref":
            return "${%s}" % name_expression["Ref"]
        return str(name_expression)

    # substitution

    def substitute(self, value: Any) -> Any:
        """
        Return a copy of `value` where the references to parameters with known, non-secret values are replaced.
        All other references (resources, imports, pseudo parameters, NoEcho and SSM parameters) are kept.
        """
        return self._substitute(copy.deepcopy(value))

    def _substitutable_value(self, name: str):
        param = self.parameters.get(name)
        if param is None or not param.substitutable:
            return None
        return param.value

    def _substitute(self, value: Any) -> Any:
        function = get_intrinsic_function(value)
        if function == "Ref":
            param_value = self._substitutable_value(value["Ref"])
            return value if param_value is None else param_value
        if function == "Fn::Sub":
            return self._substitute_sub(value["Fn::Sub"])
        if isinstance(value, dict):
            return {k: self._substitute(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute(v) for v in value]
        return value

    def _substitute_sub(self, argument: Any) -> Any:
        if isinstance(argument, str):
            template, variables = argument, None
        else:
            template, variables = argument[0], {k: self._substitute(v) for k, v in argument[1].items()}
        local_names = set(variables or {})
        unresolved = []

        def _render(unescape: bool) -> str:
            def _replace(match):
                token = match.group(1)
                if token.startswith("!"):
                    # escapes are only resolved once the whole string is known
                    return "${%s}" % token[1:] if unescape else match.group(0)
                name = token.strip()
                if name in local_names:
                    local_value = variables[name]
                    if isinstance(local_value, str):
                        return local_value
                    unresolved.append(name)
                    return match.group(0)
                param_value = self._substitutable_value(name)
                if isinstance(param_value, str):
                    return param_value
                if isinstance(param_value, list):
                    # list parameters are joined with commas when used inside strings
                    return ",".join(param_value)
                unresolved.append(name)
                return match.group(0)

            return REGEX_SUB_TOKEN.sub(_replace, template)

        result = _render(unescape=False)
        if not unresolved:
            return _render(unescape=True)
        if variables:
            remaining = {k: v for k, v in variables.items() if k in unresolved}
            if remaining:
                return {"Fn::Sub": [result, remaining]}
        return {"Fn::Sub": result}
