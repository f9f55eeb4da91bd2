from collections import defaultdict

from stackcheck.constants import MASKED_VALUE
from stackcheck.descriptor.entities import Descriptor, ParameterDeclaration
from stackcheck.descriptor.template_utils import ReferenceResolver, iter_references
from stackcheck.descriptor.validator import DescriptorValidator

# resource types which require an acknowledged capability when deployed
IAM_RESOURCE_TYPES = (
    "AWS::IAM::AccessKey",
    "AWS::IAM::Group",
    "AWS::IAM::InstanceProfile",
    "AWS::IAM::ManagedPolicy",
    "AWS::IAM::Policy",
    "AWS::IAM::Role",
    "AWS::IAM::User",
    "AWS::IAM::UserToGroupAddition",
)
IAM_NAME_PROPERTIES = ("GroupName", "InstanceProfileName", "ManagedPolicyName", "RoleName", "UserName")


def summarize(template: str | bytes | dict, validator: DescriptorValidator = None) -> dict:
    """
    Summarize a descriptor without any parameter values, similar to ``GetTemplateSummary`` of the orchestrator.
    Default values of NoEcho parameters are masked.

    :raises SchemaError: if the descriptor is structurally invalid
    """
    validator = validator or DescriptorValidator()
    descriptor = validator.load(template)

    id_summaries = defaultdict(list)
    for logical_id, resource in descriptor.resources.items():
        id_summaries[resource.type].append(logical_id)

    return {
        "Description": descriptor.description,
        "Version": descriptor.format_version or "2010-09-09",
        "Parameters": [_parameter_summary(param) for param in descriptor.parameters.values()],
        "ResourceTypes": list(id_summaries.keys()),
        "ResourceIdentifierSummaries": [
            {"ResourceType": key, "LogicalResourceIds": values} for key, values in id_summaries.items()
        ],
        "Capabilities": get_required_capabilities(descriptor),
        "DeclaredImports": get_declared_imports(descriptor),
        "Metadata": descriptor.metadata or None,
    }


def _parameter_summary(param: ParameterDeclaration) -> dict:
    result = {
        "ParameterKey": param.name,
        "ParameterType": param.type,
        "NoEcho": param.no_echo,
        "Description": param.description,
    }
    if param.default is not None:
        result["DefaultValue"] = MASKED_VALUE if param.no_echo else param.default
    if param.allowed_values is not None:
        result["ParameterConstraints"] = {"AllowedValues": list(param.allowed_values)}
    return result


def get_required_capabilities(descriptor: Descriptor) -> list[str]:
    capabilities = []
    iam_resources = [r for r in descriptor.resources.values() if r.type in IAM_RESOURCE_TYPES]
    if any(name in r.properties for r in iam_resources for name in IAM_NAME_PROPERTIES):
        capabilities.append("CAPABILITY_NAMED_IAM")
    elif iam_resources:
        capabilities.append("CAPABILITY_IAM")
    if descriptor.transform:
        capabilities.append("CAPABILITY_AUTO_EXPAND")
    return capabilities


def get_declared_imports(descriptor: Descriptor) -> list[str]:
    """
    List the export names imported by the descriptor, in a parameter-independent form
    (e.g. ``${NetworkStackName}-VPCID``).
    """
    result = []
    sections = [r.properties for r in descriptor.resources.values()]
    sections += [output.value for output in descriptor.outputs.values()]
    for body in sections:
        for reference in iter_references(body):
            if reference.function != "Fn::ImportValue":
                continue
            name = ReferenceResolver.describe_import(reference.target)
            if name not in result:
                result.append(name)
    return result
