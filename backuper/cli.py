"""
Command-line entry point for Backuper.

The entry point configures logging and registers the archive formats once,
before any backup runs.
"""

import sys
import json

import click

from backuper import __version__, configure_logging
from backuper.config import get_config
from backuper.models import BackupRequest, ConfigurationError, EncryptionMethod
from backuper.backup import execute_backup, register_default_formats, run_batch


@click.group()
@click.version_option(version=__version__, prog_name="Backuper")
@click.option('--env', 'config_name', default=None,
              help='Configuration to use (development, testing, production).')
@click.option('--debug', is_flag=True, help='Enable debug logging.')
@click.pass_context
def cli(ctx, config_name, debug):
    """Back up files and directories into zip archives."""
    try:
        config = get_config(config_name)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--env')

    configure_logging(config, debug=debug)
    register_default_formats()
    ctx.obj = config


@cli.command()
@click.argument('name')
@click.argument('paths', nargs=-1, required=True, type=click.Path())
@click.option('--output-dir', '-o', type=click.Path(file_okay=False), default=None,
              help='Directory for the archive (default: system temp directory).')
@click.option('--level', '-l', type=click.IntRange(0, 9), default=None,
              help='Compression level, 0 (store) to 9 (maximum).')
@click.option('--password', '-p', default=None, envvar='BACKUPER_PASSWORD',
              help='Encrypt the archive with this password.')
@click.option('--encryption', '-e', type=click.Choice([m.value for m in EncryptionMethod]), default=None,
              help='Encryption method: zip20 (Windows Explorer compatible) or aes256.')
@click.pass_context
def backup(ctx, name, paths, output_dir, level, password, encryption):
    """Back up PATHS into NAME.zip."""
    if encryption and password is None:
        password = click.prompt('Password', hide_input=True, confirmation_prompt=True)

    record = {
        'zipName': name,
        'outputDir': output_dir,
        'paths': list(paths),
        'zipOptions': {
            'compressLevel': level,
            'password': password,
            'encryptionMethod': encryption
        }
    }

    try:
        request = BackupRequest.from_config(record)
    except ConfigurationError as e:
        raise click.UsageError(str(e))

    result = execute_backup(request, config=ctx.obj)

    if not result.succeeded:
        click.echo(f"Backup failed: {result.error_message}", err=True)
        ctx.exit(1)

    _echo_result(result)


@cli.command('backup-all')
@click.argument('config_file', type=click.File('r'))
@click.pass_context
def backup_all(ctx, config_file):
    """
    Run every backup configuration in CONFIG_FILE, one after another.

    CONFIG_FILE is a JSON list of records such as
    {"zipName": "docs", "outputDir": "/backups", "paths": ["/home/me/Documents"]}.
    A failing backup does not stop the others.
    """
    try:
        records = json.load(config_file)
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration file {config_file.name}: {e}")
    if not isinstance(records, list):
        raise click.UsageError(f"Configuration file {config_file.name} must contain a list of backups")

    if not records:
        click.echo("No configurations found.")
        return

    results = run_batch(records, config=ctx.obj)

    failed = 0
    for result in results:
        if result.succeeded:
            _echo_result(result)
        else:
            failed += 1
            click.echo(f"Backup {result.archive_name!r} failed: {result.error_message}", err=True)

    click.echo(f"{len(results) - failed} of {len(results)} backup(s) succeeded")
    if failed:
        ctx.exit(1)


def _echo_result(result):
    click.echo(
        f"Created {result.output_file_path} "
        f"({result.total_bytes_written} bytes, {result.file_count} files)"
    )
    if result.skipped:
        click.echo(f"Skipped {len(result.skipped)} path(s)")


def main():
    """Run the CLI, saying goodbye on interrupt."""
    try:
        exit_code = cli.main(prog_name='backuper', standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("Goodbye!")
        exit_code = 130
    except click.ClickException as e:
        e.show()
        exit_code = e.exit_code
    sys.exit(exit_code or 0)
