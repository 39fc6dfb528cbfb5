import json
import logging.config
import sys
from contextlib import contextmanager
from pathlib import Path

import click

import porter
from porter.cache import Cache
from porter.config import LOG_LEVELS, Config, normalize_log_level
from porter.errors import PorterError
from porter.export import apply_finalizer_args, export_artifact
from porter.publish import push_artifact
from porter.selector import build_export_options

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "porter": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
    },
}


def configure_logging(level: str):
    config = {**LOGGING_CONFIG, "loggers": dict(LOGGING_CONFIG["loggers"])}
    config["loggers"]["porter"] = {
        **config["loggers"]["porter"],
        "level": LOG_LEVELS[normalize_log_level(level)],
    }
    logging.config.dictConfig(config)


@contextmanager
def handle_errors():
    try:
        yield
    except PorterError as e:
        raise click.ClickException(str(e)) from e


class Porter:
    def __init__(self, config: Config, debug: bool = False):
        self.config = config
        configure_logging("debug" if debug else config.log_level)
        self._cache = None

    @property
    def cache(self) -> Cache:
        if self._cache is None:
            self._cache = Cache(self.config.cache_dir, registries=self.config.registries)
        return self._cache


def echo_json(data):
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--config",
    "config_path",
    help="Configuration file (YAML or JSON)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option(
    "--cache-dir",
    help="Cache directory",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.pass_context
def cli(ctx, config_path: Path | None, cache_dir: Path | None, debug: bool):
    with handle_errors():
        config = Config.load(config_path) if config_path else Config()
    if cache_dir is not None:
        config = config.model_copy(update={"cache_dir": cache_dir.expanduser()})
    ctx.obj = Porter(config, debug=debug)


platform_option = click.option(
    "--platform",
    "platforms",
    multiple=True,
    help="Platform to export (os/arch[/variant]), can be repeated",
)
all_arch_option = click.option(
    "--all-arch", help="Export all platforms", is_flag=True
)


@cli.command()
@click.argument("reference")
@click.option("-o", "--output", help="Export the artifact to this path", default=None)
@platform_option
@all_arch_option
@click.option("--insecure", help="Use plain HTTP", is_flag=True)
@click.pass_obj
def pull(obj: Porter, reference: str, output, platforms, all_arch: bool, insecure: bool):
    """Pull an artifact into the cache, optionally exporting it."""
    with handle_errors():
        options = build_export_options(all_arch, list(platforms))
        result = obj.cache.pull(reference, insecure=insecure)
        if output:
            result.exported_files = export_artifact(result, output, options)
            apply_finalizer_args(result, output)
    click.echo(result.dump())


@cli.command()
@click.argument("reference")
@click.argument(
    "path", required=False, type=click.Path(exists=True, path_type=Path)
)
@click.option(
    "--manifest",
    help="Manifest describing the platforms to publish",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option("--insecure", help="Use plain HTTP", is_flag=True)
@click.option("--no-latest", help="Do not tag the index as latest", is_flag=True)
@click.pass_obj
def push(obj: Porter, reference: str, path, manifest, insecure: bool, no_latest: bool):
    """Publish a manifest, a directory or a binary to the registry."""
    if path is None and manifest is None:
        raise click.UsageError("PATH or --manifest is required")
    with handle_errors():
        result = push_artifact(
            obj.cache,
            manifest or path,
            reference,
            insecure=insecure,
            tag_latest=not no_latest,
            progress=sys.stderr,
        )
    click.echo(result.dump())


@cli.command()
@click.argument("artifact_id")
@click.argument("destination")
@platform_option
@all_arch_option
@click.pass_obj
def export(obj: Porter, artifact_id: str, destination: str, platforms, all_arch: bool):
    """Export a cached artifact to DESTINATION."""
    with handle_errors():
        options = build_export_options(all_arch, list(platforms))
        result = obj.cache.load(artifact_id)
        result.exported_files = export_artifact(result, destination, options)
    click.echo(result.dump())


@cli.command(name="list")
@click.pass_obj
def list_(obj: Porter):
    """List all cached artifacts."""
    with handle_errors():
        artifacts = obj.cache.list()
    echo_json([a.model_dump(mode="json", exclude_none=True) for a in artifacts])


@cli.command(name="execute-plugin")
@click.argument("artifact_id")
@click.argument("plugin")
@click.argument("args", nargs=-1)
@click.pass_obj
def execute_plugin(obj: Porter, artifact_id: str, plugin: str, args):
    """Request PLUGIN to run on a cached artifact."""
    with handle_errors():
        result = obj.cache.execute_plugin(artifact_id, plugin, list(args))
    echo_json(
        {
            "artifact": result.model_dump(mode="json", exclude_none=True),
            "plugin": plugin,
            "args": list(args),
        }
    )


@cli.command()
def version():
    """Print the porter version."""
    click.echo(porter.__version__)


if __name__ == "__main__":
    cli()
