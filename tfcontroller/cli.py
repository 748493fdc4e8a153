"""
tfcontroller CLI - run the Terraform Configuration controller.
"""

import logging

import typer
from rich.console import Console
from rich.table import Table

from .backend import BackendResolver
from .cluster import ClusterClient
from .errors import TFControllerError
from .loop import ReconcileLoop
from .models import Configuration
from .process import read_outputs
from .provider import get_provider, get_provider_credentials, resolve_region
from .reconciler import ConfigurationReconciler
from .settings import get_settings

# Setup
app = typer.Typer(
    name="tfcontroller",
    help="Reconcile Terraform Configurations into Kubernetes Jobs",
    add_completion=False,
)
console = Console()


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _cluster() -> ClusterClient:
    return ClusterClient(kubeconfig=get_settings().kubeconfig)


def _handle_command_error(e: Exception, command_type: str) -> None:
    """Print a command error and exit with code 1."""
    console.print(f"\n[bold red]✗ {command_type.capitalize()} failed:[/bold red] {e}")
    raise typer.Exit(code=1)


@app.command()
def reconcile(
    namespace: str = typer.Argument(..., help="Namespace of the Configuration"),
    name: str = typer.Argument(..., help="Name of the Configuration"),
):
    """Reconcile one Configuration once."""
    configure_logging()
    try:
        reconciler = ConfigurationReconciler(_cluster(), get_settings())
        result = reconciler.reconcile(namespace, name)
    except TFControllerError as e:
        _handle_command_error(e, "reconcile")
        return

    if result.requeue:
        console.print(
            f"[yellow]⏳ {namespace}/{name} is in progress[/yellow], "
            f"check again in {result.requeue_after:g}s"
        )
    else:
        console.print(f"[bold green]✓ Reconciled {namespace}/{name}[/bold green]")


@app.command()
def run():
    """Reconcile all Configurations continuously."""
    configure_logging()
    settings = get_settings()
    cluster = _cluster()
    loop = ReconcileLoop(ConfigurationReconciler(cluster, settings), cluster, settings)
    console.print(
        f"[bold blue]tfcontroller[/bold blue] watching Configurations "
        f"(backend namespace: {settings.terraform_backend_namespace})"
    )
    loop.run()


@app.command()
def outputs(
    namespace: str = typer.Argument(..., help="Namespace of the Configuration"),
    name: str = typer.Argument(..., help="Name of the Configuration"),
):
    """Show the Terraform outputs of a Configuration, read from its backend."""
    configure_logging()
    settings = get_settings()
    cluster = _cluster()
    try:
        configuration = Configuration.from_object(cluster.get_configuration(namespace, name))
        credentials = {}
        if not configuration.spec.inline_credentials:
            provider = get_provider(cluster, configuration)
            if provider is not None:
                credentials = get_provider_credentials(cluster, provider, resolve_region(configuration, provider))
        backend = BackendResolver(cluster, settings.terraform_backend_namespace).resolve(configuration, credentials)
        values = read_outputs(backend)
    except TFControllerError as e:
        _handle_command_error(e, "outputs")
        return

    if not values:
        console.print(f"[dim]No outputs for {namespace}/{name} yet[/dim]")
        return

    table = Table(title=f"Outputs of {namespace}/{name}")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for key in sorted(values):
        table.add_row(key, values[key].value)
    console.print(table)


@app.command()
def version():
    """Show tfcontroller version."""
    from . import __version__

    console.print(f"tfcontroller version: [bold]{__version__}[/bold]")


if __name__ == "__main__":
    app()
