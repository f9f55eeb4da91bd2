import json
import logging
import warnings

import click
import pytest
from click.testing import CliRunner
from moto import mock_aws

from stackcheck import config
from stackcheck.cli.stackcheck import stackcheck as cli
from stackcheck.descriptor.exceptions import ProvisioningError
from stackcheck.descriptor.validator import DescriptorValidator

cli: click.Group

TOPIC_TEMPLATE = """
Parameters:
  TopicName:
    Type: String
    AllowedPattern: "[a-z-]+"
  ApiToken:
    Type: String
    NoEcho: true
    MinLength: 8
Resources:
  Topic:
    Type: AWS::SNS::Topic
    Properties:
      TopicName: !Ref TopicName
Outputs:
  TopicArn:
    Value: !Ref Topic
"""

API_TOKEN = "tok-4f9a1c2e"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_config(monkeypatch):
    monkeypatch.setattr(config, "SC_LOG", False)
    monkeypatch.setattr(config, "DEBUG", False)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    loggers = {name: logging.getLogger(name).level for name in ("stackcheck", "boto3", "botocore", "urllib3")}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, logger_level in loggers.items():
        logging.getLogger(name).setLevel(logger_level)
    logging.captureWarnings(False)


@pytest.fixture
def wordpress_args(wordpress_template_path, wordpress_parameters):
    args = [wordpress_template_path]
    for key, value in wordpress_parameters.items():
        args += ["-p", f"{key}={value}"]
    return args


@pytest.fixture
def topic_template_path(tmp_path):
    path = tmp_path / "topic.yaml"
    path.write_text(TOPIC_TEMPLATE)
    return str(path)


def _json_before_error(output: str) -> dict:
    return json.loads(output.split("❌")[0])


def test_validate(runner, wordpress_args, wordpress_parameters):
    result = runner.invoke(cli, ["validate", *wordpress_args])
    assert result.exit_code == 0, result.output
    assert "is valid" in result.output
    assert "Creation order: WebServerSecurityGroup, DBSecurityGroup" in result.output
    assert "network-VPCID" in result.output
    assert "****" in result.output
    assert wordpress_parameters["DBPassword"] not in result.output


def test_validate_json(runner, wordpress_args, wordpress_parameters):
    result = runner.invoke(cli, ["validate", *wordpress_args, "-f", "json"])
    assert result.exit_code == 0, result.output

    resolved = json.loads(result.output)
    assert resolved["CreationOrder"] == [
        "WebServerSecurityGroup",
        "DBSecurityGroup",
        "DBSubnetGroup",
        "WordPressDB",
        "WebServerInstance",
    ]
    assert resolved["Parameters"]["DBPassword"] == "****"
    assert resolved["Parameters"]["DBName"] == "wordpressdb"
    assert wordpress_parameters["DBPassword"] not in result.output


def test_validate_constraint_violation(runner, wordpress_args):
    result = runner.invoke(cli, ["validate", *wordpress_args, "-p", "DBName=2bad"])
    assert result.exit_code == 1
    assert "Parameter 'DBName' with value '2bad' failed to satisfy constraint" in result.output


def test_validate_secret_constraint_violation(runner, wordpress_args):
    result = runner.invoke(cli, ["validate", *wordpress_args, "-p", "DBPassword=tiny7"])
    assert result.exit_code == 1
    assert "DBPassword" in result.output
    assert "tiny7" not in result.output


def test_validate_all_errors(runner, wordpress_args):
    result = runner.invoke(
        cli, ["validate", *wordpress_args, "-p", "DBName=2bad", "-p", "DBPassword=tiny7", "--all-errors", "-f", "json"]
    )
    assert result.exit_code == 1
    assert "has 2 error(s)" in result.output
    assert "tiny7" not in result.output

    report = _json_before_error(result.output)
    assert report["Valid"] is False
    assert [(e["Type"], e["LogicalName"], e["Constraint"]) for e in report["Errors"]] == [
        ("ConstraintViolation", "DBName", "AllowedPattern"),
        ("ConstraintViolation", "DBPassword", "MinLength"),
    ]


def test_validate_parameters_file(runner, tmp_path, wordpress_template_path, wordpress_parameters):
    parameters_file = tmp_path / "parameters.json"
    parameters_file.write_text(
        json.dumps([{"ParameterKey": k, "ParameterValue": v} for k, v in wordpress_parameters.items()])
    )

    result = runner.invoke(
        cli,
        ["validate", wordpress_template_path, "--parameters-file", str(parameters_file), "-p", "KeyName=ops"],
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        cli,
        ["validate", wordpress_template_path, "--parameters-file", str(parameters_file), "-f", "json"],
    )
    assert json.loads(result.output)["Parameters"]["KeyName"] == "deployer"


def test_validate_exports_file(runner, tmp_path, wordpress_args):
    exports_file = tmp_path / "exports.yaml"
    exports_file.write_text("network-VPCID: vpc-123\nnetwork-PublicSubnet1ID: subnet-1\n")

    result = runner.invoke(cli, ["validate", *wordpress_args, "--exports-file", str(exports_file)])
    assert result.exit_code == 1
    assert "network-PrivateSubnet1ID" in result.output


def test_validate_invalid_parameter_option(runner, wordpress_template_path):
    result = runner.invoke(cli, ["validate", wordpress_template_path, "-p", "KeyName"])
    assert result.exit_code != 0
    assert "KEY=VALUE" in result.output


def test_validate_malformed_template(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("Resources:\n  Topic:\n    Type: AWS::SNS::Topic\n  Topic:\n    Type: AWS::SQS::Queue\n")

    result = runner.invoke(cli, ["validate", str(path)])
    assert result.exit_code == 1
    assert "Topic" in result.output


def test_summary_json(runner, wordpress_template_path):
    result = runner.invoke(cli, ["summary", wordpress_template_path, "-f", "json"])
    assert result.exit_code == 0, result.output

    summary = json.loads(result.output)
    assert summary["Description"] == "CloudFormation Template for WordPress Deployment"
    assert "AWS::RDS::DBInstance" in summary["ResourceTypes"]
    assert "${VPCStackName}-VPCID" in summary["DeclaredImports"]
    assert summary["Capabilities"] == []


def test_summary_text(runner, wordpress_template_path):
    result = runner.invoke(cli, ["summary", wordpress_template_path])
    assert result.exit_code == 0, result.output
    assert "AWS::EC2::Instance" in result.output
    assert "Capabilities: -" in result.output


def test_order(runner, wordpress_template_path):
    result = runner.invoke(cli, ["order", wordpress_template_path])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "WebServerSecurityGroup",
        "DBSecurityGroup",
        "DBSubnetGroup",
        "WordPressDB",
        "WebServerInstance",
    ]


class TestDeployment:
    @pytest.fixture(autouse=True)
    def aws(self):
        with mock_aws():
            yield

    def test_deploy_and_status(self, runner, topic_template_path):
        result = runner.invoke(
            cli,
            [
                "deploy",
                topic_template_path,
                "--stack-name",
                "orders",
                "-p",
                "TopicName=orders",
                "-p",
                f"ApiToken={API_TOKEN}",
                "-f",
                "json",
            ],
        )
        assert result.exit_code == 0, result.output
        assert API_TOKEN not in result.output

        state = json.loads(result.output)
        assert state["StackName"] == "orders"
        assert state["Status"] == "COMPLETE"
        assert state["Outputs"]["TopicArn"].endswith(":orders")

        result = runner.invoke(cli, ["status", state["StackId"]])
        assert result.exit_code == 0, result.output
        assert "orders: COMPLETE (CREATE_COMPLETE)" in result.output
        assert "TopicArn = " in result.output

    def test_deploy_no_wait_and_delete(self, runner, topic_template_path):
        result = runner.invoke(
            cli,
            [
                "deploy",
                topic_template_path,
                "--stack-name",
                "payments",
                "-p",
                "TopicName=payments",
                "-p",
                f"ApiToken={API_TOKEN}",
                "--no-wait",
                "-f",
                "json",
            ],
        )
        assert result.exit_code == 0, result.output
        stack_id = json.loads(result.output)["StackId"]

        result = runner.invoke(cli, ["delete", stack_id])
        assert result.exit_code == 0, result.output
        assert "requested" in result.output

    def test_deploy_invalid_descriptor(self, runner, topic_template_path):
        result = runner.invoke(
            cli,
            ["deploy", topic_template_path, "--stack-name", "orders", "-p", "TopicName=Orders"],
        )
        assert result.exit_code == 1
        assert "TopicName" in result.output

    def test_status_unknown_stack(self, runner):
        result = runner.invoke(cli, ["status", "unknown-stack"])
        assert result.exit_code == 1
        assert "Error" in result.output


@pytest.mark.parametrize(
    "exception,expected_message",
    [
        (KeyboardInterrupt(), "Aborted!"),
        (ProvisioningError("example message"), "example message"),
        (ValueError("example message"), "example message"),
        (click.ClickException("example message"), "example message"),
        (click.exceptions.Exit(code=1), ""),
    ],
)
def test_error_handling(runner: CliRunner, monkeypatch, wordpress_args, exception, expected_message):
    """Test different globally handled exceptions, their status code, and error message."""

    def mock_call(*args, **kwargs):
        raise exception

    monkeypatch.setattr(DescriptorValidator, "validate", mock_call)
    result = runner.invoke(cli, ["validate", *wordpress_args])
    assert result.exit_code == 1
    assert expected_message in result.output


def test_unexpected_error_is_redacted(runner, monkeypatch, wordpress_args, wordpress_parameters):
    password = wordpress_parameters["DBPassword"]

    def mock_call(*args, **kwargs):
        raise ValueError(f"unable to connect with {password}")

    monkeypatch.setattr(DescriptorValidator, "validate", mock_call)
    result = runner.invoke(cli, ["validate", *wordpress_args])
    assert result.exit_code == 1
    assert "unable to connect with ****" in result.output
    assert password not in result.output


def test_error_handling_help(runner):
    """Make sure the help command is not interpreted as an error (Exit exception is raised)."""
    result = runner.invoke(cli, ["-h"])
    assert result.exit_code == 0
    assert "Usage: stackcheck" in result.output


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("stackcheck ")


def test_provisioning_failure_reasons(runner, monkeypatch):
    from stackcheck.orchestrator.client import StackOrchestrator

    def mock_describe(*args, **kwargs):
        raise ProvisioningError(
            "Stack orders failed with status ROLLBACK_COMPLETE: Topic: Topic orders already exists",
            stack_id="orders",
            status="ROLLBACK_COMPLETE",
            reasons=["Topic: Topic orders already exists", "Queue: Resource creation cancelled"],
        )

    monkeypatch.setattr(StackOrchestrator, "__init__", lambda self, *args, **kwargs: None)
    monkeypatch.setattr(StackOrchestrator, "describe", mock_describe)
    result = runner.invoke(cli, ["status", "orders"])
    assert result.exit_code == 1
    assert "failed with status ROLLBACK_COMPLETE" in result.output
    assert "Queue: Resource creation cancelled" in result.output


def test_log_level_from_config(runner, monkeypatch, restore_logging, wordpress_args, wordpress_parameters):
    from stackcheck.logging.format import RedactSecretsFilter

    monkeypatch.setattr(config, "SC_LOG", "debug")
    with warnings.catch_warnings():
        result = runner.invoke(cli, ["validate", *wordpress_args])
    assert result.exit_code == 0, result.output

    assert logging.getLogger("stackcheck").getEffectiveLevel() == logging.DEBUG
    handlers = logging.getLogger().handlers
    assert any(isinstance(f, RedactSecretsFilter) for handler in handlers for f in handler.filters)
    assert wordpress_parameters["DBPassword"] not in result.output


def test_no_logging_setup_by_default(runner, monkeypatch, wordpress_args):
    def fail(*args, **kwargs):
        raise AssertionError("logging must not be configured")

    monkeypatch.setattr("stackcheck.logging.setup.setup_logging_from_config", fail)
    result = runner.invoke(cli, ["validate", *wordpress_args])
    assert result.exit_code == 0, result.output
