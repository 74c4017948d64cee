"""
Command line interface.

    flask backup run full|incremental
    flask backup list [--type] [--since] [--until]
    flask backup stats
    flask backup verify ADDRESS
    flask backup sweep
    flask backup generate-key
    flask restore download ADDRESS -o FILE
    flask restore decrypt FILE -o FILE
    flask restore extract FILE -o DIR
    flask restore local DUMP_DIR --uri URI [--drop] [--oplog-replay]
    flask restore run ADDRESS --uri URI [--drop] [--keep-files] [--lineage]
"""

import json
import os

import click
from flask import current_app
from flask.cli import AppGroup

from ipfs_backup.backup.compression import ArchiveError, extract
from ipfs_backup.backup.executor import run_backup
from ipfs_backup.backup.manifest import ManifestIOError
from ipfs_backup.backup.restore import RestoreError, RestoreToolFailed, locate_dump_dir, prepare_oplog_replay
from ipfs_backup.backup.retention import enforce_retention_policies
from ipfs_backup.backup.storage import StoreError
from ipfs_backup.config import ConfigurationError
from ipfs_backup.models import BackupType, parse_timestamp
from ipfs_backup.utils.crypto import EncryptionError, generate_key


backup_cli = AppGroup('backup', help='Create and inspect backups.')
restore_cli = AppGroup('restore', help='Fetch, decrypt and restore backups.')


def _services():
    return current_app.extensions['ipfs_backup']


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


def _timestamp(ctx, param, value):
    try:
        return parse_timestamp(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO-8601 timestamp: {value}")


@backup_cli.command('run')
@click.argument('backup_type', type=click.Choice([t.value for t in BackupType]))
def run_command(backup_type):
    """Run a full or incremental backup now."""
    try:
        result = run_backup(backup_type)
    except Exception as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")

    _echo_json(result.to_dict())


@backup_cli.command('list')
@click.option('--type', 'backup_type', type=click.Choice([t.value for t in BackupType]))
@click.option('--since', callback=_timestamp, help='Created at or after (ISO-8601)')
@click.option('--until', callback=_timestamp, help='Created at or before (ISO-8601)')
def list_command(backup_type, since, until):
    """List backups in the manifest, newest first."""
    try:
        ledger = _services().ledger.snapshot()
    except ManifestIOError as e:
        raise click.ClickException(str(e))

    for record in ledger.query(backup_type=backup_type, since=since, until=until):
        click.echo(
            f"{record.created_at.isoformat()}  {record.type.value:<11}  "
            f"{record.size_bytes:>12}  {record.content_address}"
        )


@backup_cli.command('stats')
def stats_command():
    """Show manifest statistics."""
    try:
        ledger = _services().ledger.snapshot()
    except ManifestIOError as e:
        raise click.ClickException(str(e))

    data = ledger.statistics().to_dict()
    data['manifestContentAddress'] = ledger.manifest_content_address
    _echo_json(data)


@backup_cli.command('verify')
@click.argument('address')
def verify_command(address):
    """Check which IPFS nodes hold a pin for ADDRESS."""
    verification = _services().store.verify_pin(address)
    _echo_json(verification.to_dict())
    if not verification.all_pinned:
        raise click.exceptions.Exit(1)


@backup_cli.command('sweep')
def sweep_command():
    """Run the retention sweep."""
    try:
        result = enforce_retention_policies()
    except ManifestIOError as e:
        raise click.ClickException(str(e))

    _echo_json(result.to_dict())


@backup_cli.command('generate-key')
def generate_key_command():
    """Print a new random BACKUP_ENCRYPTION_KEY."""
    click.echo(generate_key())


@restore_cli.command('download')
@click.argument('address')
@click.option('-o', '--output', required=True, type=click.Path(dir_okay=False), help='Destination file')
def download_command(address, output):
    """Download the encrypted archive ADDRESS."""
    try:
        written = _services().store.download(address, output)
    except StoreError as e:
        raise click.ClickException(str(e))

    click.echo(f"Downloaded {written} bytes to {output}")


@restore_cli.command('decrypt')
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', required=True, type=click.Path(dir_okay=False), help='Destination file')
def decrypt_command(input_file, output):
    """Decrypt an encrypted archive."""
    try:
        _services().cipher.decrypt(input_file, output)
    except (EncryptionError, ConfigurationError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Decrypted to {output}")


@restore_cli.command('extract')
@click.argument('archive', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', required=True, type=click.Path(file_okay=False), help='Destination directory')
def extract_command(archive, output):
    """Unpack a decrypted archive and print the dump directory."""
    try:
        extract(archive, output)
    except ArchiveError as e:
        raise click.ClickException(str(e))

    click.echo(locate_dump_dir(output))


@restore_cli.command('local')
@click.argument('dump_dir', type=click.Path(exists=True, file_okay=False))
@click.option('--uri', envvar='RESTORE_URI', required=True, help='Target MongoDB URI')
@click.option('--drop', is_flag=True, help='Drop existing collections before restoring')
@click.option('--oplog-replay', is_flag=True, help='Replay the oplog of an incremental dump')
def local_command(dump_dir, uri, drop, oplog_replay):
    """Restore an extracted dump directory into the database at --uri."""
    try:
        if oplog_replay and os.path.isdir(os.path.join(dump_dir, 'local')):
            prepare_oplog_replay(dump_dir)
        _services().restorer.restore(dump_dir, uri, drop=drop, oplog_replay=oplog_replay)
    except (RestoreToolFailed, FileNotFoundError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Restored {dump_dir}")


@restore_cli.command('run')
@click.argument('address')
@click.option('--uri', envvar='RESTORE_URI', required=True, help='Target MongoDB URI')
@click.option('--drop', is_flag=True, help='Drop existing collections before restoring')
@click.option('--keep-files', is_flag=True, help='Keep downloaded and extracted files')
@click.option('--lineage', is_flag=True, help='Restore the full backup and every incremental up to ADDRESS')
def restore_command(address, uri, drop, keep_files, lineage):
    """Restore ADDRESS into the database at --uri."""
    pipeline = _services().create_restore_pipeline()

    try:
        if lineage:
            ledger = _services().ledger.snapshot()
            results = pipeline.restore_lineage(ledger, address, uri, drop=drop, keep_files=keep_files)
        else:
            results = [pipeline.restore(address, uri, drop=drop, keep_files=keep_files)]
    except RestoreError as e:
        raise click.ClickException(f"{e.stage}: {e.cause}")
    except ManifestIOError as e:
        raise click.ClickException(str(e))

    _echo_json(results)


def register_commands(app):
    app.cli.add_command(backup_cli)
    app.cli.add_command(restore_cli)
