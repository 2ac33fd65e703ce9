"""
Configuration for the GradeBook API
"""
import os
from datetime import timedelta

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

basedir = os.path.dirname(os.path.abspath(__file__))
instance_path = os.path.join(basedir, 'instance')


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith("postgres://"):
        # Render/Heroku style URLs, corrected for SQLAlchemy
        return database_url.replace("postgres://", "postgresql://", 1)
    if database_url:
        return database_url
    # SQLite for local development, placed in the 'instance' folder
    return f"sqlite:///{os.path.join(instance_path, 'gradebook.db')}"


def _seconds(name, default):
    return timedelta(seconds=int(os.environ.get(name, default)))


class Config:
    ENV_NAME = 'development'
    DEBUG = False
    TESTING = False

    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-me')

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Tokens
    JWT_SECRET = os.environ.get('JWT_SECRET')
    JWT_ACCESS_EXPIRES = _seconds('JWT_ACCESS_EXPIRES', 24 * 3600)
    JWT_REFRESH_EXPIRES = _seconds('JWT_REFRESH_EXPIRES', 30 * 24 * 3600)
    BCRYPT_ROUNDS = int(os.environ.get('BCRYPT_ROUNDS', 12))

    # Web push
    VAPID_EMAIL = os.environ.get('VAPID_EMAIL')
    VAPID_PUBLIC_KEY = os.environ.get('VAPID_PUBLIC_KEY')
    VAPID_PRIVATE_KEY = os.environ.get('VAPID_PRIVATE_KEY')

    CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # Seed account created by build.py / flask init-db
    DEFAULT_SUPERADMIN_EMAIL = os.environ.get('DEFAULT_SUPERADMIN_EMAIL')
    DEFAULT_SUPERADMIN_PASSWORD = os.environ.get('DEFAULT_SUPERADMIN_PASSWORD')

    @staticmethod
    def init_app(app):
        if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and not os.path.exists(instance_path):
            os.makedirs(instance_path)


class DevelopmentConfig(Config):
    DEBUG = True
    JWT_SECRET = os.environ.get('JWT_SECRET', 'dev-jwt-secret')


class TestingConfig(Config):
    ENV_NAME = 'testing'
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    JWT_SECRET = 'testing-jwt-secret'
    JWT_ACCESS_EXPIRES = timedelta(hours=1)
    JWT_REFRESH_EXPIRES = timedelta(days=1)
    BCRYPT_ROUNDS = 4
    VAPID_EMAIL = 'admin@gradebook.test'
    VAPID_PUBLIC_KEY = 'B' + 'Q' * 86
    VAPID_PRIVATE_KEY = 'p' * 43
    CORS_ORIGINS = ['http://localhost:3000']
    LOG_LEVEL = 'WARNING'
    DEFAULT_SUPERADMIN_EMAIL = None
    DEFAULT_SUPERADMIN_PASSWORD = None

    @staticmethod
    def init_app(app):
        pass


class ProductionConfig(Config):
    ENV_NAME = 'production'
    PREFERRED_URL_SCHEME = 'https'

    # Security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 30,
        'pool_recycle': 1800,  # Recycle connections after 30 minutes
        'pool_pre_ping': True,
        'max_overflow': 2
    }

    @staticmethod
    def init_app(app):
        Config.init_app(app)
        # Secret key must come from the environment in production
        app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', os.urandom(24))
        if not app.config.get('JWT_SECRET'):
            app.logger.error("JWT_SECRET is not set - authenticated requests will fail")


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig,
}


def get_config(name=None):
    """Resolve a config class from a name or the environment"""
    name = name or os.environ.get('APP_CONFIG') or os.environ.get('FLASK_ENV') or 'default'
    return config.get(name, DevelopmentConfig)
