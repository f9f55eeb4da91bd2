import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from stackcheck.constants import MASKED_VALUE


class DeletionPolicy(str, Enum):
    DELETE = "Delete"
    RETAIN = "Retain"
    RETAIN_EXCEPT_ON_CREATE = "RetainExceptOnCreate"
    SNAPSHOT = "Snapshot"


class UpdateReplacePolicy(str, Enum):
    DELETE = "Delete"
    RETAIN = "Retain"
    SNAPSHOT = "Snapshot"


class ReferenceKind(str, Enum):
    PARAMETER = "Parameter"
    RESOURCE = "Resource"
    ATTRIBUTE = "Attribute"
    PSEUDO = "PseudoParameter"
    IMPORT = "Import"
    MAPPING = "Mapping"
    CONDITION = "Condition"


# List<AWS::EC2::Subnet::Id>, AWS::SSM::Parameter::Value<String>, ...
LIST_TYPE_REGEX = re.compile(r"^List<(?P<item>.+)>$")
SSM_TYPE_REGEX = re.compile(r"^AWS::SSM::Parameter::Value<(?P<item>.+)>$")


@dataclass(frozen=True)
class ParameterDeclaration:
    name: str
    type: str
    description: Optional[str] = None
    default: Optional[str] = None
    no_echo: bool = False
    allowed_values: Optional[tuple[str, ...]] = None
    allowed_pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    constraint_description: Optional[str] = None

    @property
    def is_ssm_type(self) -> bool:
        return bool(SSM_TYPE_REGEX.match(self.type))

    @property
    def is_list_type(self) -> bool:
        if self.type == "CommaDelimitedList":
            return True
        if self.is_ssm_type:
            return False
        return bool(LIST_TYPE_REGEX.match(self.type))

    @property
    def item_type(self) -> str:
        """The type of a single value, e.g. ``Number`` for ``List<Number>``."""
        if self.type == "CommaDelimitedList":
            return "String"
        match = LIST_TYPE_REGEX.match(self.type)
        if match and not self.is_ssm_type:
            return match.group("item")
        return self.type

    @property
    def is_number_type(self) -> bool:
        return self.item_type == "Number"

    @property
    def is_aws_specific_type(self) -> bool:
        return self.item_type.startswith("AWS::")


@dataclass(frozen=True)
class ResourceDeclaration:
    logical_id: str
    type: str
    properties: dict = field(default_factory=dict)
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    update_replace_policy: UpdateReplacePolicy = UpdateReplacePolicy.DELETE
    # whether the policies were declared in the descriptor, or are the implicit default
    explicit_deletion_policy: bool = False
    explicit_update_replace_policy: bool = False
    depends_on: tuple[str, ...] = ()
    condition: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    creation_policy: Optional[dict] = None
    update_policy: Optional[dict] = None


@dataclass(frozen=True)
class OutputDeclaration:
    name: str
    value: Any
    description: Optional[str] = None
    export_name: Any = None
    condition: Optional[str] = None


@dataclass(frozen=True)
class Descriptor:
    """A parsed, structurally valid deployment descriptor. Treat all contained dicts as read-only."""

    resources: dict[str, ResourceDeclaration]
    parameters: dict[str, ParameterDeclaration] = field(default_factory=dict)
    outputs: dict[str, OutputDeclaration] = field(default_factory=dict)
    mappings: dict = field(default_factory=dict)
    conditions: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    description: Optional[str] = None
    format_version: Optional[str] = None
    transform: Any = None
    template: dict = field(default_factory=dict, repr=False)

    @property
    def secret_parameter_names(self) -> list[str]:
        return [name for name, param in self.parameters.items() if param.no_echo]


@dataclass(frozen=True)
class Reference:
    """A single reference from `source` (a logical name) at `field` to `target`."""

    source: str
    field: str
    kind: ReferenceKind
    target: str
    attribute: Optional[str] = None

    def __str__(self):
        target = f"{self.target}.{self.attribute}" if self.attribute else self.target
        return f"{self.source}.{self.field} -> {self.kind.value} {target}"


@dataclass(frozen=True)
class ResolvedParameter:
    name: str
    value: str | list[str]
    no_echo: bool = False
    from_default: bool = False
    # SSM typed parameters hold the name of an SSM parameter, the orchestrator resolves the actual value
    deferred: bool = False

    @property
    def rendered_value(self) -> str | list[str]:
        return MASKED_VALUE if self.no_echo else self.value

    @property
    def substitutable(self) -> bool:
        return not (self.no_echo or self.deferred)

    def __repr__(self):
        return (
            f"ResolvedParameter(name={self.name!r}, value={self.rendered_value!r}, no_echo={self.no_echo}, "
            f"from_default={self.from_default}, deferred={self.deferred})"
        )


@dataclass(frozen=True)
class ResolvedDescriptor:
    """
    The result of a successful validation: effective parameter values, resource and output bodies with all
    substitutable parameter references replaced, the creation order and all references found.
    """

    descriptor: Descriptor
    parameters: dict[str, ResolvedParameter]
    resources: dict[str, dict]
    outputs: dict[str, dict]
    creation_order: tuple[str, ...]
    references: tuple[Reference, ...] = ()
    imports: tuple[str, ...] = ()
    policy_warnings: tuple[str, ...] = ()

    def parameter_values(self, masked: bool = True) -> dict[str, str | list[str]]:
        return {
            name: (param.rendered_value if masked else param.value)
            for name, param in self.parameters.items()
        }

    def references_to(self, target: str) -> list[Reference]:
        return [ref for ref in self.references if ref.target == target]

    def to_dict(self) -> dict:
        """Render the resolved descriptor, with the values of NoEcho parameters masked."""
        return {
            "Description": self.descriptor.description,
            "Parameters": self.parameter_values(masked=True),
            "Resources": self.resources,
            "Outputs": self.outputs,
            "CreationOrder": list(self.creation_order),
            "Imports": list(self.imports),
            "PolicyWarnings": list(self.policy_warnings),
        }
