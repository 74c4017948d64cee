import os
import re


class ConfigurationError(Exception):
    """Raised when the service configuration is missing or invalid."""
    pass


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes')


def _node_urls() -> list:
    """
    Collect IPFS node URLs from the environment.

    IPFS_NODE_URLS takes a comma-separated list. The numbered
    IPFS_NODE_1_URL / IPFS_NODE_2_URL variables are still honoured.
    """
    urls = [u.strip() for u in os.environ.get('IPFS_NODE_URLS', '').split(',') if u.strip()]
    for index in range(1, 10):
        url = os.environ.get(f'IPFS_NODE_{index}_URL')
        if url and url not in urls:
            urls.append(url)
    return urls


class Config:
    """Base configuration"""

    # MongoDB
    MONGODB_URI = os.environ.get('MONGODB_URI', '')
    MONGODB_DATABASE = os.environ.get('MONGODB_DATABASE') or None
    MONGODUMP_PATH = os.environ.get('MONGODUMP_PATH', 'mongodump')
    MONGORESTORE_PATH = os.environ.get('MONGORESTORE_PATH', 'mongorestore')

    # Encryption (base64 encoded 256-bit key)
    BACKUP_ENCRYPTION_KEY = os.environ.get('BACKUP_ENCRYPTION_KEY', '')

    # IPFS
    IPFS_NODE_URLS = _node_urls()
    IPFS_REPLICATION_FACTOR = _env_int('IPFS_REPLICATION_FACTOR', 2)
    IPFS_TIMEOUT = _env_int('IPFS_TIMEOUT', 30)

    # Schedules (cron, UTC)
    FULL_BACKUP_SCHEDULE = os.environ.get('FULL_BACKUP_SCHEDULE', '0 2 * * 0')
    INCREMENTAL_BACKUP_SCHEDULE = os.environ.get('INCREMENTAL_BACKUP_SCHEDULE', '0 2 * * *')
    RETENTION_SCHEDULE = os.environ.get('RETENTION_SCHEDULE', '30 2 * * *')
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)

    # Retention
    BACKUP_RETENTION_DAYS = _env_int('BACKUP_RETENTION_DAYS', 90)
    BACKUP_LOCAL_RETENTION_DAYS = _env_int('BACKUP_LOCAL_RETENTION_DAYS', 7)

    # Local storage
    TEMP_DIR = os.environ.get('BACKUP_TEMP_DIR') or '/data/temp'
    LOCAL_BACKUP_DIR = os.environ.get('BACKUP_STORAGE_DIR') or '/data/backups'
    MANIFEST_FILENAME = 'manifest.json'

    # Secondary mirror: a directory path or s3://bucket/prefix
    MIRROR_TARGET = os.environ.get('MIRROR_TARGET') or None
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # Notifications
    WEBHOOK_URL = os.environ.get('WEBHOOK_URL', '')
    WEBHOOK_ENABLED = _env_bool('WEBHOOK_ENABLED', False)

    # API
    API_TOKEN = os.environ.get('API_TOKEN') or None

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data', 'logs'
    )


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'backups')


class TestingConfig(Config):
    """Testing configuration (no scheduler, lenient validation)"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    WEBHOOK_ENABLED = False
    MONGODB_URI = 'mongodb://localhost:27017'
    IPFS_NODE_URLS = ['http://ipfs-1:5001', 'http://ipfs-2:5001']
    IPFS_REPLICATION_FACTOR = 2
    API_TOKEN = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def validate_config(settings) -> None:
    """
    Validate the settings the backup pipeline cannot run without.

    Args:
        settings: Mapping of configuration values (Flask app.config)

    Raises:
        ConfigurationError: If required values are missing or inconsistent
    """
    missing = []
    if not settings.get('MONGODB_URI'):
        missing.append('MONGODB_URI')
    if not settings.get('BACKUP_ENCRYPTION_KEY'):
        missing.append('BACKUP_ENCRYPTION_KEY')
    if not settings.get('IPFS_NODE_URLS'):
        missing.append('IPFS_NODE_URLS')

    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    replication = settings.get('IPFS_REPLICATION_FACTOR', 1)
    if replication < 1:
        raise ConfigurationError("IPFS_REPLICATION_FACTOR must be at least 1")
    if replication > len(settings['IPFS_NODE_URLS']):
        raise ConfigurationError(
            f"IPFS_REPLICATION_FACTOR ({replication}) exceeds the number of "
            f"configured IPFS nodes ({len(settings['IPFS_NODE_URLS'])})"
        )

    if settings.get('BACKUP_LOCAL_RETENTION_DAYS', 0) < 0 or settings.get('BACKUP_RETENTION_DAYS', 0) < 0:
        raise ConfigurationError("Retention periods cannot be negative")


def mask_uri(uri: str) -> str:
    """Hide the password component of a connection URI."""
    if not uri:
        return uri
    return re.sub(r'(://[^:/@]+):[^@/]+@', r'\1:****@', uri)


def safe_config(settings) -> dict:
    """
    Build a loggable view of the backup settings with secrets masked.

    Args:
        settings: Mapping of configuration values

    Returns:
        Dict safe to write to logs
    """
    return {
        'mongodb_uri': mask_uri(settings.get('MONGODB_URI', '')),
        'mongodb_database': settings.get('MONGODB_DATABASE'),
        'encryption_key': '****' if settings.get('BACKUP_ENCRYPTION_KEY') else '',
        'ipfs_nodes': list(settings.get('IPFS_NODE_URLS', [])),
        'replication_factor': settings.get('IPFS_REPLICATION_FACTOR'),
        'full_schedule': settings.get('FULL_BACKUP_SCHEDULE'),
        'incremental_schedule': settings.get('INCREMENTAL_BACKUP_SCHEDULE'),
        'retention_days': settings.get('BACKUP_RETENTION_DAYS'),
        'local_retention_days': settings.get('BACKUP_LOCAL_RETENTION_DAYS'),
        'storage_dir': settings.get('LOCAL_BACKUP_DIR'),
        'temp_dir': settings.get('TEMP_DIR'),
        'mirror': settings.get('MIRROR_TARGET'),
        'webhook_enabled': bool(settings.get('WEBHOOK_ENABLED') and settings.get('WEBHOOK_URL')),
    }
