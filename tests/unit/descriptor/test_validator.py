import copy
import json
import logging

import pytest

from stackcheck.descriptor.exceptions import (
    CircularDependencyError,
    ConstraintViolation,
    DuplicateLogicalNameError,
    MissingParameterError,
    PolicyError,
    SchemaError,
    UnresolvedReferenceError,
)
from stackcheck.descriptor.template_preparer import parse_template
from stackcheck.descriptor.validator import DescriptorValidator, validate_descriptor

WORDPRESS_IMPORTS = (
    "network-VPCID",
    "network-PublicSubnet1ID",
    "network-PrivateSubnet1ID",
    "network-PrivateSubnet2ID",
)

TOPIC_TEMPLATE = """
Parameters:
  Env:
    Type: String
    AllowedValues: [dev, prod]
Conditions:
  IsProd: !Equals [!Ref Env, prod]
Resources:
  Topic:
    Type: AWS::SNS::Topic
    Properties:
      TopicName: !Sub "${Env}-topic"
Outputs:
  TopicName:
    Value: !GetAtt Topic.TopicName
"""


@pytest.fixture
def validator():
    return DescriptorValidator(require_explicit_retention=False, strict_resource_types=False)


def test_validate_wordpress(validator, wordpress_template, wordpress_parameters):
    resolved = validator.validate(wordpress_template, wordpress_parameters)

    assert resolved.descriptor.description == "CloudFormation Template for WordPress Deployment"
    assert resolved.creation_order == (
        "WebServerSecurityGroup",
        "DBSecurityGroup",
        "DBSubnetGroup",
        "WordPressDB",
        "WebServerInstance",
    )
    assert resolved.imports == WORDPRESS_IMPORTS

    database = resolved.resources["WordPressDB"]["Properties"]
    assert database["DBName"] == "wordpressdb"
    assert database["MasterUsername"] == "wpadmin"
    assert database["MasterUserPassword"] == {"Ref": "DBPassword"}
    assert database["AllocatedStorage"] == "20"
    assert database["DBSubnetGroupName"] == {"Ref": "DBSubnetGroup"}

    instance = resolved.resources["WebServerInstance"]
    assert instance["Properties"]["ImageId"] == {"Ref": "LatestAmiId"}
    assert instance["Properties"]["InstanceType"] == "t2.micro"
    assert instance["Properties"]["KeyName"] == "deployer"
    assert instance["Properties"]["NetworkInterfaces"][0]["SubnetId"] == {
        "Fn::ImportValue": "network-PublicSubnet1ID"
    }

    wp_config = instance["Metadata"]["AWS::CloudFormation::Init"]["install_wordpress"]["files"][
        "/var/www/html/wp-config.php"
    ]["content"]["Fn::Sub"]
    assert "define('DB_NAME', 'wordpressdb');" in wp_config
    assert "define('DB_USER', 'wpadmin');" in wp_config
    assert "define('DB_PASSWORD', '${DBPassword}');" in wp_config
    assert "define('DB_HOST', '${WordPressDB.Endpoint.Address}');" in wp_config

    group = resolved.resources["WebServerSecurityGroup"]["Properties"]
    assert group["SecurityGroupIngress"][1]["CidrIp"] == "0.0.0.0/0"
    assert group["VpcId"] == {"Fn::ImportValue": "network-VPCID"}

    assert resolved.outputs["DBEndpoint"]["Value"] == {"Fn::GetAtt": ["WordPressDB", "Endpoint.Address"]}
    assert resolved.outputs["WebsiteURL"]["Value"] == {
        "Fn::Sub": "http://${WebServerInstance.PublicDnsName}/wordpress"
    }


def test_every_reference_is_resolved(validator, wordpress_template, wordpress_parameters):
    resolved = validator.validate(wordpress_template, wordpress_parameters)

    references = resolved.references_to("WordPressDB")
    assert {ref.source for ref in references} == {"WebServerInstance", "Outputs.DBEndpoint"}
    assert {ref.attribute for ref in references} == {"Endpoint.Address"}
    assert {ref.target for ref in resolved.references_to("AWS::StackName")} == {"AWS::StackName"}


def test_secret_values_never_rendered(validator, wordpress_template, wordpress_parameters):
    resolved = validator.validate(wordpress_template, wordpress_parameters)
    password = wordpress_parameters["DBPassword"]

    assert resolved.parameter_values()["DBPassword"] == "****"
    assert resolved.parameter_values(masked=False)["DBPassword"] == password
    assert password not in json.dumps(resolved.to_dict())
    assert password not in repr(resolved.parameters["DBPassword"])
    assert password not in repr(resolved.resources)


def test_validation_is_deterministic(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    original = copy.deepcopy(template)
    parameters = dict(wordpress_parameters)

    first = validator.validate(template, parameters)
    second = validator.validate(template, parameters)

    assert first.to_dict() == second.to_dict()
    assert first.references == second.references
    assert template == original
    assert parameters == wordpress_parameters


def test_db_name_fails(validator, wordpress_template, wordpress_parameters):
    with pytest.raises(ConstraintViolation) as e:
        validator.validate(wordpress_template, {**wordpress_parameters, "DBName": "2bad"})
    assert e.value.logical_name == "DBName"
    assert e.value.constraint == "AllowedPattern"


def test_db_password_fails(validator, wordpress_template, wordpress_parameters):
    with pytest.raises(ConstraintViolation) as e:
        validator.validate(wordpress_template, {**wordpress_parameters, "DBPassword": "short"})
    assert e.value.logical_name == "DBPassword"
    assert e.value.constraint == "MinLength"
    assert "short" not in str(e.value)


def test_ssh_location_passes(validator, wordpress_template, wordpress_parameters):
    resolved = validator.validate(wordpress_template, {**wordpress_parameters, "SSHLocation": "10.0.0.0/8"})
    ingress = resolved.resources["WebServerSecurityGroup"]["Properties"]["SecurityGroupIngress"]
    assert ingress[1]["CidrIp"] == "10.0.0.0/8"


def test_policy_warnings(validator, wordpress_template, wordpress_parameters, caplog):
    with caplog.at_level(logging.WARNING, logger="stackcheck"):
        resolved = validator.validate(wordpress_template, wordpress_parameters)

    assert resolved.policy_warnings == (
        "Resource DBSecurityGroup has DeletionPolicy Delete but UpdateReplacePolicy Retain",
        "Resource WordPressDB has DeletionPolicy Delete but UpdateReplacePolicy Retain",
        "Resource DBSubnetGroup has DeletionPolicy Delete but UpdateReplacePolicy Retain",
    )
    assert "Resource WordPressDB has DeletionPolicy Delete" in caplog.text


def test_exports_are_checked(wordpress_template, wordpress_parameters):
    exports = {name: "id-%s" % i for i, name in enumerate(WORDPRESS_IMPORTS)}
    resolved = DescriptorValidator(exports=exports).validate(wordpress_template, wordpress_parameters)
    assert resolved.imports == WORDPRESS_IMPORTS

    exports.pop("network-PrivateSubnet2ID")
    with pytest.raises(UnresolvedReferenceError) as e:
        DescriptorValidator(exports=exports).validate(wordpress_template, wordpress_parameters)
    assert e.value.logical_name == "DBSubnetGroup"
    assert e.value.constraint == "ExportExists"
    assert e.value.message == "No export named network-PrivateSubnet2ID found"


def test_collect_errors(validator, wordpress_template, wordpress_parameters):
    parameters = {**wordpress_parameters, "DBName": "2bad", "DBPassword": "short"}
    parameters.pop("KeyName")

    errors = validator.collect_errors(wordpress_template, parameters)

    assert [(type(e), e.logical_name) for e in errors] == [
        (MissingParameterError, "KeyName"),
        (ConstraintViolation, "DBName"),
        (ConstraintViolation, "DBPassword"),
    ]
    assert validator.collect_errors(wordpress_template, wordpress_parameters) == []


def test_collect_errors_stops_at_schema_errors(validator):
    errors = validator.collect_errors("Resources: [", {"Unknown": "value"})
    assert len(errors) == 1
    assert isinstance(errors[0], SchemaError)


def test_unresolved_reference(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"]["WordPressDB"]["Properties"]["KmsKeyId"] = {"Ref": "EncryptionKey"}

    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, wordpress_parameters)
    assert e.value.logical_name == "WordPressDB"
    assert e.value.field == "Properties.KmsKeyId.Ref"


def test_unknown_attribute(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Outputs"]["DBEndpoint"]["Value"] = {"Fn::GetAtt": ["WordPressDB", "Address"]}

    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, wordpress_parameters)
    assert e.value.logical_name == "Outputs.DBEndpoint"
    assert e.value.constraint == "AttributeExists"


def test_unresolved_depends_on(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"]["WordPressDB"]["DependsOn"] = ["DBParameterGroup"]

    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, wordpress_parameters)
    assert e.value.field == "DependsOn"


def test_circular_dependency(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"]["WebServerSecurityGroup"]["DependsOn"] = "WebServerInstance"

    with pytest.raises(CircularDependencyError) as e:
        validator.validate(template, wordpress_parameters)
    assert "WebServerInstance" in e.value.resource_ids


def test_parameter_and_resource_share_a_name(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"]["DBName"] = {"Type": "AWS::SNS::Topic"}

    with pytest.raises(DuplicateLogicalNameError) as e:
        validator.validate(template, wordpress_parameters)
    assert e.value.logical_name == "DBName"


def test_duplicate_resource_in_document(validator):
    template = """
Resources:
  Topic:
    Type: AWS::SNS::Topic
  Topic:
    Type: AWS::SNS::Topic
"""
    with pytest.raises(DuplicateLogicalNameError):
        validator.validate(template)


def test_conditions(validator):
    resolved = validator.validate(TOPIC_TEMPLATE, {"Env": "prod"})
    assert resolved.resources["Topic"]["Properties"]["TopicName"] == "prod-topic"
    assert [ref.target for ref in resolved.references if ref.source == "Conditions.IsProd"] == ["Env"]

    template = parse_template(TOPIC_TEMPLATE)
    template["Resources"]["Topic"]["Condition"] = "IsDev"
    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, {"Env": "prod"})
    assert e.value.constraint == "ConditionExists"

    template = parse_template(TOPIC_TEMPLATE)
    template["Conditions"]["HasTopic"] = {"Fn::Equals": [{"Ref": "Topic"}, ""]}
    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, {"Env": "prod"})
    assert e.value.constraint == "ConditionReference"


def test_mappings(validator):
    template = parse_template(TOPIC_TEMPLATE)
    template["Mappings"] = {"EnvMap": {"prod": {"Display": "Production"}}}
    template["Resources"]["Topic"]["Properties"]["DisplayName"] = {
        "Fn::FindInMap": ["EnvMap", {"Ref": "Env"}, "Display"]
    }
    resolved = validator.validate(template, {"Env": "prod"})
    assert resolved.resources["Topic"]["Properties"]["DisplayName"] == {
        "Fn::FindInMap": ["EnvMap", "prod", "Display"]
    }

    template["Resources"]["Topic"]["Properties"]["DisplayName"] = {"Fn::FindInMap": ["Names", "prod", "Display"]}
    with pytest.raises(UnresolvedReferenceError) as e:
        validator.validate(template, {"Env": "prod"})
    assert e.value.constraint == "MappingExists"


def test_policies(wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"]["WebServerInstance"]["DeletionPolicy"] = "Snapshot"
    with pytest.raises(PolicyError) as e:
        validate_descriptor(template, wordpress_parameters)
    assert e.value.logical_name == "WebServerInstance"
    assert e.value.constraint == "SnapshotSupported"

    template = parse_template(wordpress_template)
    template["Resources"]["WordPressDB"]["DeletionPolicy"] = "Archive"
    with pytest.raises(PolicyError) as e:
        validate_descriptor(template, wordpress_parameters)
    assert e.value.field == "DeletionPolicy"


def test_require_explicit_retention(wordpress_template, wordpress_parameters):
    # the database declares its DeletionPolicy
    validate_descriptor(wordpress_template, wordpress_parameters, require_explicit_retention=True)

    template = parse_template(wordpress_template)
    del template["Resources"]["WordPressDB"]["DeletionPolicy"]
    with pytest.raises(PolicyError) as e:
        validate_descriptor(template, wordpress_parameters, require_explicit_retention=True)
    assert e.value.logical_name == "WordPressDB"
    assert e.value.constraint == "ExplicitRetention"


def test_strict_resource_types():
    template = parse_template(TOPIC_TEMPLATE)
    template["Resources"]["Function"] = {"Type": "AWS::Lambda::Function"}

    validate_descriptor(template, {"Env": "dev"}, strict_resource_types=False)
    with pytest.raises(SchemaError):
        validate_descriptor(template, {"Env": "dev"}, strict_resource_types=True)

    template["Resources"]["Function"] = {"Type": "Custom::Seeder"}
    validate_descriptor(template, {"Env": "dev"}, strict_resource_types=True)


@pytest.mark.parametrize(
    "template",
    [
        {"Resources": {}},
        {"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}, "Unknown": {}},
        {"AWSTemplateFormatVersion": "2011-01-01", "Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}},
        {"Resources": {"my-topic": {"Type": "AWS::SNS::Topic"}}},
        {"Resources": {"Topic": {"Properties": {}}}},
        {"Resources": {"Topic": {"Type": "AWS::SNS::Topic", "Propertys": {}}}},
        {"Parameters": {"Env": {"Type": "Text"}}, "Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}},
        {
            "Parameters": {"Env": {"Type": "String", "MinLength": 5, "MaxLength": 2}},
            "Resources": {"Topic": {"Type": "AWS::SNS::Topic"}},
        },
        {
            "Parameters": {"Env": {"Type": "String", "AllowedPattern": "[a-z"}},
            "Resources": {"Topic": {"Type": "AWS::SNS::Topic"}},
        },
        {"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}, "Outputs": {"Arn": {"Description": "x"}}},
        {"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}, "Mappings": {"Map": {"key": "flat"}}},
        {"Resources": {"Topic": {"Type": "AWS::SNS::Topic", "Properties": {"Name": {"Ref": ["Topic"]}}}}},
    ],
)
def test_schema_errors(validator, template):
    with pytest.raises(SchemaError):
        validator.validate(template)


def test_error_to_dict(validator, wordpress_template, wordpress_parameters):
    with pytest.raises(ConstraintViolation) as e:
        validator.validate(wordpress_template, {**wordpress_parameters, "InstanceType": "m5.large"})
    assert e.value.to_dict() == {
        "Type": "ConstraintViolation",
        "LogicalName": "InstanceType",
        "Field": "AllowedValues",
        "Constraint": "AllowedValues",
        "Message": "Parameter 'InstanceType' with value 'm5.large' failed to satisfy constraint: "
        "must be a valid EC2 instance type.",
    }


def test_output_requires_declared_resource(validator, wordpress_template, wordpress_parameters):
    template = parse_template(wordpress_template)
    template["Resources"].pop("WordPressDB")

    errors = validator.collect_errors(template, wordpress_parameters)
    output_errors = [e for e in errors if e.logical_name == "Outputs.DBEndpoint"]
    assert len(output_errors) == 1
    assert isinstance(output_errors[0], UnresolvedReferenceError)
    assert "WordPressDB" in output_errors[0].message


@pytest.mark.parametrize(
    "topic",
    [
        {"Type": "AWS::SNS::Topic", "Properties": {"TopicName": {"Fn::GetAtt": ["Topic", "TopicName"]}}},
        {"Type": "AWS::SNS::Topic", "DependsOn": "Topic"},
    ],
)
def test_self_reference(validator, topic):
    with pytest.raises(CircularDependencyError) as e:
        validator.validate({"Resources": {"Topic": topic}})
    assert e.value.resource_ids == ["Topic"]
    assert e.value.logical_name == "Topic"


def test_invalid_utf8_is_a_schema_error(validator):
    with pytest.raises(SchemaError):
        validator.validate(b"Resources:\n  A:\n    Type: AWS::SNS::Topic\n    Properties: {TopicName: \xff\xfe}\n")
