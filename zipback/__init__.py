import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.4.0'


def configure_logging(cfg):
    """Configure application logging"""

    log_level = logging.getLevelName(str(cfg.LOG_LEVEL).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler, only when a log directory is configured
    if cfg.LOG_DIR:
        os.makedirs(cfg.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(cfg.LOG_DIR, 'zipback.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # paramiko is chatty on INFO
    logging.getLogger('paramiko').setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).debug(
        f"Logging configured (level: {logging.getLevelName(log_level)})"
    )


def get_config(config_name=None):
    """Resolve a config class by name, falling back to ZIPBACK_ENV."""
    from zipback.config import config

    if config_name is None:
        config_name = os.environ.get('ZIPBACK_ENV', 'production')

    if config_name not in config:
        raise ValueError(
            f"Invalid environment: {config_name}. "
            f"Valid options: {sorted(config.keys())}"
        )
    return config[config_name]


def create_runner(config_name=None, log_level=None):
    """BackupRunner factory"""
    cfg = get_config(config_name)

    if log_level:
        # per-invocation override, kept off the shared class
        cfg = type(cfg.__name__, (cfg,), {'LOG_LEVEL': log_level})

    configure_logging(cfg)

    from zipback.backup.executor import BackupRunner
    return BackupRunner(cfg)
