# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import asyncio
import inspect
import logging
from contextlib import suppress
from functools import wraps
from typing import Optional

import anyio
import rich.table
import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from typing_extensions import Annotated

from ._dashboard import Dashboard
from ._exceptions import KubetetherError, ValidationError
from ._settings import Settings

console = Console()

RESOURCE_ALIASES = {
    "po": "pod",
    "pod": "pod",
    "pods": "pod",
    "svc": "service",
    "service": "service",
    "services": "service",
}

app = typer.Typer(
    no_args_is_help=True,
    help="Manage Kubernetes contexts and port forwards.",
)


def _typer_async(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        with suppress(asyncio.CancelledError, KeyboardInterrupt):
            return asyncio.run(f(*args, **kwargs))

    return wrapper


def register(app, func, alias=None):
    if inspect.iscoroutinefunction(func):
        func = _typer_async(func)
    if alias is not None:
        app.command(alias)(func)
    else:
        app.command()(func)


def _fail(e: KubetetherError):
    console.print(f"[red]error[/red] ({e.kind}): {escape(e.message)}")
    raise typer.Exit(code=1)


def parse_resource(value: str) -> tuple[str, str]:
    """Parse ``TYPE/NAME`` as used by kubectl, e.g. ``svc/web``."""
    kind, _, name = value.partition("/")
    if not name:
        raise ValidationError(f"Expected TYPE/NAME, got {value}")
    try:
        return RESOURCE_ALIASES[kind.lower()], name
    except KeyError as e:
        raise ValidationError(
            f"Can only forward to pods and services, got {kind}"
        ) from e


def parse_ports(value: str) -> tuple[str, str]:
    """Parse ``LOCAL:REMOTE``, or a single port used for both."""
    local, _, remote = value.partition(":")
    return local, remote or local


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log what is happening.")
    ] = False,
):
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True))],
        )


async def contexts():
    """List the contexts in the kubeconfig."""
    try:
        dashboard = Dashboard(Settings.from_env())
        await dashboard.registry.reload()
    except KubetetherError as e:
        _fail(e)

    table = rich.table.Table(box=box.SIMPLE)
    table.add_column("Current", no_wrap=True)
    table.add_column("Name", style="magenta", no_wrap=True)
    table.add_column("Server", style="blue", no_wrap=True)
    table.add_column("User", style="orange3", no_wrap=True)
    table.add_column("Namespace", style="yellow", no_wrap=True)
    for context in dashboard.registry.list_contexts():
        table.add_row(
            "*" if context.is_current else "",
            context.name,
            context.server,
            context.credentials_ref,
            context.namespace,
        )
    console.print(table)


async def check(context: Annotated[str, typer.Argument(help="Context to test.")]):
    """Check that the cluster of a context answers."""
    try:
        dashboard = Dashboard(Settings.from_env())
    except KubetetherError as e:
        _fail(e)
    try:
        await dashboard.registry.reload()
        result = await dashboard.test_connection(context)
    except KubetetherError as e:
        _fail(e)
    finally:
        await dashboard.clients.close()
    if not result["ok"]:
        console.print(f"[red]{context}[/red]: {escape(result['error'])}")
        raise typer.Exit(code=1)
    console.print(f"[green]{context}[/green]: Kubernetes {result['version']}")


async def forward(
    context: Annotated[str, typer.Argument(help="Context of the cluster.")],
    resource: Annotated[str, typer.Argument(help="TYPE/NAME, e.g. pod/api-0 or svc/web.")],
    ports: Annotated[str, typer.Argument(help="LOCAL:REMOTE ports.")],
    namespace: Annotated[
        Optional[str], typer.Option("--namespace", "-n", help="Namespace.")
    ] = None,
):
    """Forward a local port to a Pod or Service until interrupted."""
    try:
        resource_type, resource_name = parse_resource(resource)
        local_port, remote_port = parse_ports(ports)
        async with Dashboard(Settings.from_env()) as dashboard:
            body = {
                "namespace": namespace
                or dashboard.registry.resolve(context).namespace,
                "resourceType": resource_type,
                "resourceName": resource_name,
                "localPort": local_port,
                "remotePort": remote_port,
            }
            session = await dashboard.start_port_forward(context, body)
            console.print(
                f"Forwarding from {dashboard.settings.bind_address}:{session['localPort']} "
                f"-> {session['podName']}:{session['targetPort']}"
            )
            await anyio.sleep_forever()
    except KubetetherError as e:
        _fail(e)


async def sessions(
    context: Annotated[
        Optional[str], typer.Argument(help="Only show sessions of this context.")
    ] = None,
):
    """Show recorded port forward sessions."""
    try:
        dashboard = Dashboard(Settings.from_env())
        if context:
            records = await dashboard.store.list_by_context(context)
        else:
            records = await dashboard.store.list_all()
    except KubetetherError as e:
        _fail(e)

    table = rich.table.Table(box=box.SIMPLE)
    table.add_column("ID", no_wrap=True)
    table.add_column("Context", style="magenta", no_wrap=True)
    table.add_column("Target", style="blue", no_wrap=True)
    table.add_column("Ports", no_wrap=True)
    table.add_column("Status", style="yellow", no_wrap=True)
    table.add_column("Error", no_wrap=False)
    for session in sorted(records, key=lambda s: s.created_at, reverse=True):
        table.add_row(
            session.id[:8],
            session.context_name,
            f"{session.namespace}/{session.resource_type}/{session.resource_name}",
            f"{session.local_port}:{session.remote_port}",
            session.status.value,
            escape(session.last_error or ""),
        )
    console.print(table)


register(app, contexts)
register(app, check)
register(app, forward)
register(app, sessions)


def go():
    app()


if __name__ == "__main__":
    go()
