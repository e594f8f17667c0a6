"""
Configuration for the Single Database Multi-Tenant Fee Billing System
"""

import os
from urllib.parse import quote_plus
import dotenv
dotenv.load_dotenv()  # Load environment variables from .env file

class Config:
    """Base configuration for single database multi-tenancy"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-me'

    # Full URL wins over the individual MySQL settings below
    DATABASE_URL = os.environ.get('DATABASE_URL')

    # Database settings
    MYSQL_HOST = os.environ.get('DB_HOST', 'localhost')
    MYSQL_PORT = int(os.environ.get('DB_PORT', 3306))
    MYSQL_USERNAME = os.environ.get('DB_USER', 'root')
    # NOTE: do NOT override an explicitly empty password from .env
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME', 'school_fees')
    MYSQL_CHARSET = 'utf8mb4'

    # SQLAlchemy settings
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
    }

    # Fee billing settings
    INVOICE_NUMBER_PREFIX = os.environ.get('INVOICE_NUMBER_PREFIX', 'FEE')
    RECEIPT_NUMBER_PREFIX = os.environ.get('RECEIPT_NUMBER_PREFIX', 'RCP')
    FEES_PAGE_SIZE = int(os.environ.get('FEES_PAGE_SIZE', 50))

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get single database URI for all tenants."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"

    def get_engine_options(self, database_uri: str) -> dict:
        """Pool options only make sense for server databases."""
        if database_uri.startswith('sqlite'):
            return {'connect_args': {'timeout': 30, 'check_same_thread': False}}
        return dict(self.SQLALCHEMY_ENGINE_OPTIONS)


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'

    def get_database_uri(self) -> str:
        return self.DATABASE_URL or 'sqlite:///:memory:'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
