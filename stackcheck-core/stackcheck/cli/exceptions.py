import typing as t

import click

from stackcheck.descriptor.redaction import redact


class CLIError(click.ClickException):
    """
    A ClickException with a red error message. Registered secret values are masked in the message, and an optional
    hint is printed below it.
    """

    def __init__(self, message: str, hint: t.Optional[str] = None):
        super().__init__(redact(message))
        self.hint = hint

    def format_message(self) -> str:
        return click.style(f"❌ Error: {self.message}", fg="red")

    def show(self, file: t.Optional[t.IO[t.Any]] = None) -> None:
        click.echo(self.format_message(), file=file, err=file is None)
        if self.hint:
            click.echo(click.style(self.hint, dim=True), file=file, err=file is None)
