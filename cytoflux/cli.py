import typer
from pathlib import Path
import yaml
from importlib.resources import files

from cytoflux.utils.exceptions import ConfigurationError

app = typer.Typer(help="cytoflux: differential abundance and state for cytometry cluster summaries")


@app.command()
def init(
    path: Path = typer.Argument(Path("cytoflux_config.yaml"), help="Where to write the template"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """
    Generate a config scaffold (basic template) at given path.
    """
    if path.exists() and not force:
        typer.echo(f"{path} already exists; use --force to overwrite.", err=True)
        raise typer.Exit(code=1)
    default_yaml = files("cytoflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file"),
):
    """
    Run the cytoflux pipeline from a YAML config.
    """
    from cytoflux.utils.cli_setup import configure_cli_display
    from cytoflux.main import run_pipeline

    configure_cli_display()
    config_data = yaml.safe_load(config.read_text()) or {}
    if not isinstance(config_data, dict):
        raise ConfigurationError(f"{config} must contain a YAML mapping.")

    run_pipeline(config=config_data)


if __name__ == "__main__":
    app()
