"""
Command Line Interface for envprov.
"""
import logging
import os

import click
import pydantic

from ..BACKENDS.docker_cli import DockerCliBackend
from ..BUILDERS.batch import BatchBuilder
from ..BUILDERS.provisioner import Provisioner
from ..BUILDERS.retry import with_retries
from ..BUILDERS.verifier import Verifier
from ..config import load_settings
from ..CONVERTERS.to_dockerfile import DockerfileRenderer
from ..errors import ProvisionError, ValidationError
from ..PARSERS.manifest_parser import ManifestParser
from ..PARSERS.recipe_parser import RecipeParser
from ..REGISTRY.layer_cache import FileLayerStore

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def default_tag(recipe_path: str) -> str:
    """
    Tag used when none is given: Dockerfile.<variant> -> runner-<variant>.
    """
    base = os.path.basename(recipe_path)
    if base.startswith("Dockerfile.") and len(base) > len("Dockerfile."):
        return ManifestParser.TAG_PREFIX + base[len("Dockerfile."):]
    raise click.UsageError("cannot derive a tag from the recipe name, pass --tag")


def fail(ctx, error: ProvisionError):
    """Prints a diagnostic naming the failed step and exits non-zero."""
    click.echo(f"Error: {error}", err=True)
    ctx.exit(2 if isinstance(error, ValidationError) else 1)


@click.group()
@click.option('--cache-dir', default=None, help='Layer cache directory')
@click.option('--docker-bin', default=None, help='docker executable')
@click.option('--log-level', default=None, help='Logging level (DEBUG, INFO, ...)')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='.env file with ENVPROV_* settings')
@click.pass_context
def cli(ctx, cache_dir, docker_bin, log_level, env_file):
    """
    envprov - provision minimal compiler environments as container images.

    Reads Dockerfile-style recipes (FROM, WORKDIR, RUN, CMD) and builds them
    step by step with a shared layer cache.
    """
    ctx.ensure_object(dict)
    try:
        settings = load_settings(dotenv_path=env_file)
        overrides = {k: v for k, v in (('cache_dir', cache_dir), ('docker_bin', docker_bin),
                                        ('log_level', log_level)) if v is not None}
        if overrides:
            settings = settings.model_copy(update=overrides)
            settings = type(settings).model_validate(settings.model_dump())
    except pydantic.ValidationError as e:
        raise click.UsageError(f"invalid settings: {e.errors()[0]['msg']}")

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    ctx.obj['settings'] = settings


def _backend(ctx):
    if ctx.obj.get('backend') is None:
        settings = ctx.obj['settings']
        ctx.obj['backend'] = DockerCliBackend(settings.docker_bin, timeout=settings.command_timeout)
    return ctx.obj['backend']


def _store(ctx):
    if ctx.obj.get('store') is None:
        ctx.obj['store'] = FileLayerStore(ctx.obj['settings'].cache_dir)
    return ctx.obj['store']


def _parse_recipe(ctx, path):
    try:
        return RecipeParser().parse(path)
    except ValidationError as e:
        fail(ctx, ValidationError(f"{path}: {e.message}", line=e.line, hint=e.hint))


@cli.command()
@click.argument('recipe', type=click.Path(exists=True, dir_okay=False))
@click.option('--tag', '-t', 'tags', multiple=True, help='Tag for the artifact (repeatable)')
@click.option('--no-cache', is_flag=True, help='Do not reuse cached layers')
@click.option('--pull', is_flag=True, help='Always fetch a newer base')
@click.option('--retries', default=0, show_default=True, type=click.IntRange(min=0),
              help='Re-run the whole build on transient failures')
@click.option('--verify', 'verify_after', is_flag=True, help='Run smoke checks on the result')
@click.pass_context
def build(ctx, recipe, tags, no_cache, pull, retries, verify_after):
    """Build an artifact from a recipe file."""
    tags = list(tags) or [default_tag(recipe)]
    parsed = _parse_recipe(ctx, recipe)
    provisioner = Provisioner(_backend(ctx), _store(ctx))

    try:
        artifact = with_retries(
            lambda: provisioner.provision(parsed, tags, name=tags[0], use_cache=not no_cache, pull=pull),
            retries=retries,
        )
    except ProvisionError as e:
        fail(ctx, e)
        return

    click.echo(f"Successfully built {artifact.artifact_id}")
    for tag in artifact.tags:
        click.echo(f"Successfully tagged {tag}")

    if verify_after:
        _report(ctx, Verifier(_backend(ctx)).verify(tags[0], parsed, working_dir=artifact.working_dir))


@cli.command(name='build-all')
@click.argument('manifest', type=click.Path(exists=True, dir_okay=False))
@click.option('--jobs', '-j', default=None, type=click.IntRange(min=1), help='Builds to run at once')
@click.option('--no-cache', is_flag=True, help='Do not reuse cached layers')
@click.option('--pull', is_flag=True, help='Always fetch newer bases')
@click.option('--retries', default=0, show_default=True, type=click.IntRange(min=0),
              help='Re-run a variant build on transient failures')
@click.pass_context
def build_all(ctx, manifest, jobs, no_cache, pull, retries):
    """Build every variant listed in a manifest."""
    try:
        variants = ManifestParser().parse(manifest)
    except ValidationError as e:
        fail(ctx, e)
        return

    builder = BatchBuilder(
        Provisioner(_backend(ctx), _store(ctx)),
        jobs=jobs or ctx.obj['settings'].jobs,
        retries=retries,
    )
    results = builder.build_all(variants, use_cache=not no_cache, pull=pull)

    click.echo(f"{'VARIANT':15} {'STATUS':8} {'CACHED':8} RESULT")
    click.echo("-" * 60)
    for variant, result in zip(variants, results):
        status = "ok" if result.ok else "failed"
        cached = f"{result.cache_hits}/{len(result.steps)}"
        outcome = variant.tag if result.ok else result.error.splitlines()[0]
        click.echo(f"{variant.name:15} {status:8} {cached:8} {outcome}")

    failed = [r for r in results if not r.ok]
    if failed:
        click.echo(f"{len(failed)} of {len(results)} build(s) failed.", err=True)
        ctx.exit(1)
    click.echo("All images built successfully!")


@cli.command()
@click.argument('recipe', type=click.Path(exists=True, dir_okay=False))
@click.option('--out', '-o', default=None, help='Output file (default: stdout)')
@click.pass_context
def render(ctx, recipe, out):
    """Print a recipe in canonical form."""
    parsed = _parse_recipe(ctx, recipe)
    renderer = DockerfileRenderer()
    if out:
        renderer.write(parsed, out)
        click.echo(f"Recipe written to {out}")
    else:
        click.echo(renderer.render(parsed), nl=False)


@cli.command()
@click.argument('image')
@click.argument('recipe', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def verify(ctx, image, recipe):
    """Run smoke checks on a built artifact."""
    parsed = _parse_recipe(ctx, recipe)
    try:
        report = Verifier(_backend(ctx)).verify(image, parsed)
    except ProvisionError as e:
        fail(ctx, e)
        return
    _report(ctx, report)


def _report(ctx, report):
    for check in report.checks:
        mark = "PASS" if check.passed else "FAIL"
        click.echo(f"{mark:5} {check.name:16} {check.detail}")
    if not report.passed:
        ctx.exit(1)


@cli.group()
def cache():
    """Inspect or empty the layer cache."""


@cache.command(name='ls')
@click.pass_context
def cache_ls(ctx):
    """List cached step layers."""
    entries = _store(ctx).entries()
    click.echo(f"{'KEY':14} {'LAYER':20} CREATED")
    for entry in entries:
        click.echo(f"{entry.key[:12]:14} {entry.layer_id[:19]:20} {entry.created_at}")
    click.echo(f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")


@cache.command(name='prune')
@click.option('--max-age-days', default=None, type=click.IntRange(min=0), help='Only remove older entries')
@click.pass_context
def cache_prune(ctx, max_age_days):
    """Remove cached entries."""
    removed = _store(ctx).prune(max_age_days=max_age_days)
    click.echo(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
