import os


class Config:
    """Base configuration"""

    # Logging
    LOG_LEVEL = os.environ.get('ZIPBACK_LOG_LEVEL') or 'INFO'
    LOG_DIR = os.environ.get('ZIPBACK_LOG_DIR') or None

    # SSH
    SSH_KNOWN_HOSTS = os.environ.get('ZIPBACK_KNOWN_HOSTS') or os.path.expanduser('~/.ssh/known_hosts')
    SSH_TIMEOUT = int(os.environ.get('ZIPBACK_SSH_TIMEOUT') or 30)
    SSH_IGNORE_HOST_KEY = False

    # Notifications
    SMTP_TIMEOUT = int(os.environ.get('ZIPBACK_SMTP_TIMEOUT') or 30)

    # Databases
    # Credential fallback for local mysqldump when the profile has no user/password
    MYSQL_CNF_LOCATIONS = [
        '/etc/mysql/debian.cnf',
        os.path.expanduser('~/.my.cnf'),
    ]


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = os.environ.get('ZIPBACK_LOG_LEVEL') or 'DEBUG'

    # Keep a log file next to the sources during development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    LOG_LEVEL = 'DEBUG'
    LOG_DIR = None

    # Test servers are throwaway containers with fresh host keys
    SSH_IGNORE_HOST_KEY = True
    SSH_TIMEOUT = 5
    SMTP_TIMEOUT = 5
    MYSQL_CNF_LOCATIONS = []


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
