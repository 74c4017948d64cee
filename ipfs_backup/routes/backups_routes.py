"""
Backup routes - Inspect the manifest, audit pins and trigger runs.
"""

from apscheduler.jobstores.base import ConflictingIdError
from flask import Blueprint, current_app, jsonify, request

from ipfs_backup.auth import token_required
from ipfs_backup.backup.manifest import ManifestIOError
from ipfs_backup.models import BackupType, parse_timestamp


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _services():
    return current_app.extensions['ipfs_backup']


def _load_ledger():
    return _services().ledger.snapshot()


@bp.route('/', methods=['GET'])
@token_required
def list_backups():
    """
    List backups in the manifest, newest first.

    Query params:
        - type: full/incremental
        - since: ISO-8601 lower bound on creation time
        - until: ISO-8601 upper bound on creation time

    Returns:
        JSON with backup records
    """
    backup_type = request.args.get('type')
    if backup_type and backup_type not in [t.value for t in BackupType]:
        return jsonify({'error': 'Invalid type filter'}), 400

    try:
        since = parse_timestamp(request.args.get('since'))
        until = parse_timestamp(request.args.get('until'))
    except ValueError:
        return jsonify({'error': 'Invalid timestamp'}), 400

    try:
        records = _load_ledger().query(backup_type=backup_type or None, since=since, until=until)
    except ManifestIOError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify({
        'backups': [record.to_dict() for record in records],
        'total': len(records)
    })


@bp.route('/statistics', methods=['GET'])
@token_required
def get_statistics():
    """Get manifest statistics."""
    try:
        ledger = _load_ledger()
    except ManifestIOError as e:
        return jsonify({'error': str(e)}), 500

    data = ledger.statistics().to_dict()
    data['manifestContentAddress'] = ledger.manifest_content_address
    return jsonify(data)


@bp.route('/<address>', methods=['GET'])
@token_required
def get_backup(address):
    try:
        record = _load_ledger().get(address)
    except ManifestIOError as e:
        return jsonify({'error': str(e)}), 500

    if record is None:
        return jsonify({'error': 'Backup not found'}), 404

    return jsonify(record.to_dict())


@bp.route('/<address>/verify', methods=['GET'])
@token_required
def verify_backup(address):
    """
    Check which IPFS nodes currently hold a pin for a backup.

    Returns:
        JSON with allPinned and per-node results
    """
    verification = _services().store.verify_pin(address)
    return jsonify(verification.to_dict())


@bp.route('/<address>/lineage', methods=['GET'])
@token_required
def get_lineage(address):
    """
    Get the backups needed to restore a backup, in restore order, plus any
    gaps in its oplog chain.
    """
    try:
        ledger = _load_ledger()
        records = ledger.lineage(address)
        gaps = ledger.find_chain_gaps(records[0].content_address)
    except ManifestIOError as e:
        return jsonify({'error': str(e)}), 404

    return jsonify({
        'backups': [record.to_dict() for record in records],
        'gaps': [{'end': end.isoformat(), 'nextStart': start.isoformat()} for end, start in gaps]
    })


@bp.route('/run/<backup_type>', methods=['POST'])
@token_required
def run_backup_now(backup_type):
    """
    Schedule an immediate backup run.

    Args:
        backup_type: full/incremental

    Returns:
        JSON with the scheduler job ID
    """
    if backup_type not in [t.value for t in BackupType]:
        return jsonify({'error': 'Invalid backup type'}), 400

    from ipfs_backup.scheduler import trigger_backup_now

    try:
        job_id = trigger_backup_now(backup_type)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503
    except ConflictingIdError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({
        'success': True,
        'message': f'{backup_type.capitalize()} backup started',
        'jobId': job_id
    }), 202


@bp.route('/retention/sweep', methods=['POST'])
@token_required
def sweep_now():
    """Run the retention sweep synchronously and return its summary."""
    from ipfs_backup.backup.retention import enforce_retention_policies

    try:
        result = enforce_retention_policies()
    except ManifestIOError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(result.to_dict())
