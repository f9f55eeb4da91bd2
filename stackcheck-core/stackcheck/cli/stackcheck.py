import json
import logging
import os
import traceback
from typing import Any, Optional

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stackcheck import config
from stackcheck.cli.exceptions import CLIError
from stackcheck.constants import VERSION
from stackcheck.descriptor.exceptions import DescriptorError, ProvisioningError
from stackcheck.descriptor.parameters import normalize_parameter_values
from stackcheck.descriptor.redaction import redact, register_secret_parameters
from stackcheck.descriptor.resource_ordering import order_resources
from stackcheck.descriptor.template_preparer import read_template

console = Console(highlight=False, soft_wrap=True)


class StackcheckCliGroup(click.Group):
    """
    A Click group used for the top-level ``stackcheck`` command group. It implements global exception handling by:

    - Ignoring click exceptions (already handled)
    - Wrapping descriptor and orchestrator errors, and all unexpected exceptions, in a CLIError
    """

    def invoke(self, ctx: click.Context):
        try:
            return super(StackcheckCliGroup, self).invoke(ctx)
        except click.exceptions.Exit:
            # raise Exit exceptions unmodified (e.g., raised on --help)
            raise
        except click.ClickException:
            if ctx and ctx.params.get("debug"):
                click.echo(redact(traceback.format_exc()))
            raise
        except DescriptorError as e:
            if ctx and ctx.params.get("debug"):
                click.echo(redact(traceback.format_exc()))
            hint = "\n".join(e.reasons) if isinstance(e, ProvisioningError) and e.reasons else None
            raise CLIError(e.message, hint=hint) from e
        except Exception as e:
            if ctx and ctx.params.get("debug"):
                click.echo(redact(traceback.format_exc()))
            raise CLIError(str(e)) from e


def _setup_cli_debug() -> None:
    from stackcheck.logging.setup import setup_logging_for_cli

    config.DEBUG = True
    os.environ["DEBUG"] = "1"

    setup_logging_for_cli(logging.DEBUG if config.DEBUG else logging.INFO)


# Re-usable format option decorator which can be used across multiple commands
_click_format_option = click.option(
    "-f",
    "--format",
    "format_",
    type=click.Choice(["text", "json"]),
    default="text",
    help="The formatting style for the command output.",
)

_click_parameter_option = click.option(
    "-p",
    "--parameter",
    "parameter",
    multiple=True,
    metavar="KEY=VALUE",
    help="A parameter value, can be given multiple times. Overrides values of the parameters file.",
)

_click_parameters_file_option = click.option(
    "--parameters-file",
    type=click.Path(exists=True, dir_okay=False, readable=True),
    help="JSON or YAML file with parameter values, either a mapping or a list of ParameterKey/ParameterValue entries",
)


@click.group(
    name="stackcheck",
    help="Validate CloudFormation deployment descriptors and deploy them",
    cls=StackcheckCliGroup,
    context_settings={
        "help_option_names": ["-h", "--help"],
        "show_default": True,
    },
)
@click.version_option(
    VERSION,
    "--version",
    "-v",
    message="stackcheck %(version)s",
    help="Show the version of stackcheck and exit",
)
@click.option("-d", "--debug", is_flag=True, help="Enable CLI debugging mode")
def stackcheck(debug) -> None:
    # --profile is read manually in stackcheck.cli.main because it needs to be read before stackcheck.config is read
    if debug:
        _setup_cli_debug()
    elif config.SC_LOG or config.DEBUG:
        # without any of them, only the command output is printed
        from stackcheck.logging.setup import setup_logging_from_config

        setup_logging_from_config()


@stackcheck.command(name="validate", short_help="Validate a descriptor")
@click.argument("template", type=click.Path(exists=True, dir_okay=False, readable=True))
@_click_parameter_option
@_click_parameters_file_option
@click.option(
    "--exports-file",
    type=click.Path(exists=True, dir_okay=False, readable=True),
    help="JSON or YAML mapping of export names to values, imports must name one of them",
)
@click.option("--all-errors", is_flag=True, help="Report all errors instead of stopping at the first one")
@_click_format_option
def cmd_validate(
    template: str,
    parameter: tuple[str, ...],
    parameters_file: Optional[str],
    exports_file: Optional[str],
    all_errors: bool,
    format_: str,
) -> None:
    """
    Validate a descriptor with the given parameter values, without contacting any service.

    \b
    The command fails with a non-zero exit code if:
    - the descriptor is malformed
    - a parameter value is missing, unknown, or violates its constraints
    - a reference cannot be resolved, or resources depend on each other in a cycle
    - a deletion or creation policy is invalid
    """
    from stackcheck.descriptor.validator import DescriptorValidator

    template_body = read_template(template)
    parameters = _load_parameters(parameter, parameters_file)
    exports = _load_file(exports_file) if exports_file else None
    if exports is not None and not isinstance(exports, dict):
        raise CLIError("The exports file must contain a mapping of export names to values")

    validator = DescriptorValidator(exports=exports)
    _register_secrets(validator, template_body, parameters)

    if all_errors:
        errors = validator.collect_errors(template_body, parameters)
        if errors:
            _print_errors(errors, format_)
            raise CLIError("Descriptor %s has %s error(s)" % (template, len(errors)))

    resolved = validator.validate(template_body, parameters)
    if format_ == "json":
        click.echo(redact(json.dumps(resolved.to_dict(), indent=2, default=str)))
        return

    console.print(f"[green]:heavy_check_mark:[/green] {escape(template)} is valid")
    _print_parameters(resolved.parameter_values(masked=True))
    console.print(f"Creation order: {escape(', '.join(resolved.creation_order))}")
    if resolved.imports:
        console.print(f"Imports: {escape(', '.join(resolved.imports))}")
    for warning in resolved.policy_warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


@stackcheck.command(name="summary", short_help="Summarize a descriptor")
@click.argument("template", type=click.Path(exists=True, dir_okay=False, readable=True))
@_click_format_option
def cmd_summary(template: str, format_: str) -> None:
    """
    Print the parameter declarations, resource types, required capabilities and imports of a descriptor.
    Default values of NoEcho parameters are masked.
    """
    from stackcheck.descriptor.summary import summarize

    summary = summarize(read_template(template))
    if format_ == "json":
        click.echo(json.dumps(summary, indent=2, default=str))
        return

    if summary["Description"]:
        console.print(escape(summary["Description"].strip()))
    grid = Table(show_header=True)
    grid.add_column("Parameter")
    grid.add_column("Type")
    grid.add_column("Default")
    for param in summary["Parameters"]:
        grid.add_row(
            escape(param["ParameterKey"]),
            escape(param["ParameterType"]),
            escape(str(param.get("DefaultValue", ""))),
        )
    console.print(grid)
    console.print(f"Resource types: {escape(', '.join(summary['ResourceTypes']))}")
    console.print(f"Capabilities: {escape(', '.join(summary['Capabilities']) or '-')}")
    if summary["DeclaredImports"]:
        console.print(f"Imports: {escape(', '.join(summary['DeclaredImports']))}")


@stackcheck.command(name="order", short_help="Print the resource creation order")
@click.argument("template", type=click.Path(exists=True, dir_okay=False, readable=True))
def cmd_order(template: str) -> None:
    """
    Print the logical IDs of all resources in an order which satisfies their dependencies, one per line.
    """
    from stackcheck.descriptor.validator import DescriptorValidator

    descriptor = DescriptorValidator().load(read_template(template))
    for logical_id in order_resources(descriptor.template["Resources"]):
        click.echo(logical_id)


@stackcheck.command(name="deploy", short_help="Validate and deploy a descriptor")
@click.argument("template", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--stack-name", required=True, help="The name of the deployment")
@_click_parameter_option
@_click_parameters_file_option
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    type=click.Choice(["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]),
    help="A capability to acknowledge, can be given multiple times",
)
@click.option("--wait/--no-wait", default=True, help="Wait until the deployment is complete")
@click.option("--timeout", type=int, default=None, help="Seconds to wait for the deployment (default: SC_DEPLOY_TIMEOUT)")
@_click_format_option
def cmd_deploy(
    template: str,
    stack_name: str,
    parameter: tuple[str, ...],
    parameters_file: Optional[str],
    capabilities: tuple[str, ...],
    wait: bool,
    timeout: Optional[int],
    format_: str,
) -> None:
    """
    Validate a descriptor and submit it to the orchestrator. The orchestrator creates the resources; failures are
    reported with the reason given by the orchestrator.
    """
    from stackcheck.orchestrator.client import StackOrchestrator

    template_body = read_template(template)
    parameters = _load_parameters(parameter, parameters_file)
    orchestrator = StackOrchestrator()
    _register_secrets(orchestrator.validator, template_body, parameters)

    stack_id = orchestrator.submit(template_body, parameters, stack_name, capabilities=list(capabilities))
    if not wait:
        if format_ == "json":
            click.echo(json.dumps({"StackId": stack_id}))
        else:
            console.print(f"Submitted {escape(stack_name)}: {escape(stack_id)}")
        return

    if format_ == "json":
        state = orchestrator.wait(stack_id, timeout=timeout)
    else:
        with console.status(f"Waiting for {escape(stack_name)}"):
            state = orchestrator.wait(stack_id, timeout=timeout)
    _print_state(state, format_)


@stackcheck.command(name="status", short_help="Show the status of a deployment")
@click.argument("stack_id")
@_click_format_option
def cmd_status(stack_id: str, format_: str) -> None:
    """
    Show the status of a deployment, and its outputs once it is complete.
    """
    from stackcheck.orchestrator.client import StackOrchestrator

    _print_state(StackOrchestrator().describe(stack_id), format_)


@stackcheck.command(name="delete", short_help="Delete a deployment")
@click.argument("stack_id")
def cmd_delete(stack_id: str) -> None:
    """
    Request the deletion of a deployment. Resources with a Retain deletion policy are kept.
    """
    from stackcheck.orchestrator.client import StackOrchestrator

    StackOrchestrator().delete(stack_id)
    console.print(f"Deletion of {escape(stack_id)} requested")


def _load_file(path: str) -> Any:
    # YAML is a superset of JSON
    with open(path, "r") as fd:
        try:
            return yaml.safe_load(fd)
        except yaml.YAMLError as e:
            raise CLIError("Unable to parse %s: %s" % (path, e)) from e


def _load_parameters(parameter: tuple[str, ...], parameters_file: Optional[str]) -> dict[str, str]:
    parameters = {}
    if parameters_file:
        content = _load_file(parameters_file)
        if content is not None and not isinstance(content, (dict, list)):
            raise CLIError("The parameters file must contain a mapping or a list of parameters")
        parameters.update(normalize_parameter_values(content))
    for entry in parameter:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter("expected KEY=VALUE, got '%s'" % entry, param_hint="'-p' / '--parameter'")
        parameters[key.strip()] = value
    return parameters


def _register_secrets(validator, template_body: str, parameters: dict) -> None:
    """Register the values of NoEcho parameters, so they are masked in every output of this invocation."""
    try:
        descriptor = validator.load(template_body)
    except DescriptorError:
        # reported by the actual command
        return
    register_secret_parameters(descriptor.parameters, parameters)


def _print_errors(errors: list[DescriptorError], format_: str) -> None:
    if format_ == "json":
        click.echo(redact(json.dumps({"Valid": False, "Errors": [e.to_dict() for e in errors]}, indent=2)))
        return
    for error in errors:
        console.print(f"[red]{escape(error.error_type)}[/red] {escape(redact(error.message))}")


def _print_parameters(values: dict) -> None:
    if not values:
        return
    grid = Table(show_header=True)
    grid.add_column("Parameter")
    grid.add_column("Value")
    for name, value in values.items():
        value = ",".join(value) if isinstance(value, list) else value
        grid.add_row(escape(name), escape(redact(str(value))))
    console.print(grid)


def _print_state(state, format_: str) -> None:
    if format_ == "json":
        click.echo(redact(json.dumps(state.to_dict(), indent=2)))
        return
    console.print(f"{escape(state.stack_name)}: {state.status.value} ({escape(state.stack_status)})")
    if state.reason:
        console.print(escape(redact(state.reason)))
    for key, value in state.outputs.items():
        console.print(f"  {escape(key)} = {escape(redact(str(value)))}")
