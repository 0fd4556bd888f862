import os
import tempfile


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Logging
    DEBUG = _env_flag('DEBUG')
    LOG_DIR = os.environ.get('BACKUPER_LOG_DIR') or os.path.join(
        os.path.expanduser('~'), '.backuper', 'logs'
    )
    LOG_MAX_BYTES = 10485760  # 10MB
    LOG_BACKUP_COUNT = 10

    # Archive defaults
    DEFAULT_OUTPUT_DIR = os.environ.get('BACKUPER_OUTPUT_DIR') or tempfile.gettempdir()
    DEFAULT_COMPRESSION_LEVEL = 9
    DEFAULT_ENCRYPTION_METHOD = 'zip20'

    # Streaming
    READ_CHUNK_SIZE = 64 * 1024
    PROGRESS_INTERVAL = int(os.environ.get('BACKUPER_PROGRESS_INTERVAL', 50))

    # Sort siblings by name for reproducible archives
    SORT_ENTRIES = _env_flag('BACKUPER_SORT_ENTRIES')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep logs next to the checkout
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'logs')


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    LOG_DIR = None
    PROGRESS_INTERVAL = 2
    READ_CHUNK_SIZE = 1024


class ProductionConfig(Config):
    """Production configuration"""
    pass


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """
    Look up a configuration class by name.

    Falls back to BACKUPER_ENV, then to the production configuration.
    """
    if config_name is None:
        config_name = os.environ.get('BACKUPER_ENV', 'default')
    try:
        return config[config_name]
    except KeyError:
        raise ValueError(
            f"Invalid configuration name: {config_name}. "
            f"Valid options: {list(config.keys())}"
        )
