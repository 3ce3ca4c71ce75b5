"""
Configuration management for the RewardFlow engine.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shopify app credentials (webhook secret fallback when a tenant has none)
    SHOPIFY_API_KEY = os.getenv('SHOPIFY_CLIENT_ID', os.getenv('SHOPIFY_API_KEY', ''))
    SHOPIFY_API_SECRET = os.getenv('SHOPIFY_CLIENT_SECRET', os.getenv('SHOPIFY_API_SECRET', ''))
    SKIP_WEBHOOK_VERIFICATION = _env_flag('SKIP_WEBHOOK_VERIFICATION')
    # Admin API: accept ?shop= / X-Shop-Domain without a session token
    ALLOW_SHOP_DOMAIN_AUTH = _env_flag('ALLOW_SHOP_DOMAIN_AUTH')

    # Campaign engine
    # False = first-match-wins per tenant per order per trigger category.
    # Tenants can override with settings['campaigns']['multi_fire'].
    CAMPAIGN_MULTI_FIRE = _env_flag('CAMPAIGN_MULTI_FIRE')
    VOUCHER_CODE_PREFIX = os.getenv('VOUCHER_CODE_PREFIX', 'RF')
    DEFAULT_MEMBERSHIP_VALIDITY_DAYS = 365

    # Referrals
    REFERRAL_VALIDITY_DAYS = int(os.getenv('REFERRAL_VALIDITY_DAYS', '90'))

    # Webhook ingestion retries for transient persistence errors
    INGESTION_MAX_ATTEMPTS = int(os.getenv('INGESTION_MAX_ATTEMPTS', '3'))
    INGESTION_RETRY_BACKOFF_SECONDS = float(os.getenv('INGESTION_RETRY_BACKOFF_SECONDS', '0.2'))


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SKIP_WEBHOOK_VERIFICATION = _env_flag('SKIP_WEBHOOK_VERIFICATION', True)
    ALLOW_SHOP_DOMAIN_AUTH = _env_flag('ALLOW_SHOP_DOMAIN_AUTH', True)
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///rewardflow_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False
    SKIP_WEBHOOK_VERIFICATION = False
    ALLOW_SHOP_DOMAIN_AUTH = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
        # Bound every statement; a timeout surfaces as a retryable OperationalError
        'connect_args': {'options': '-c statement_timeout=10000 -c lock_timeout=5000'},
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, empty, or contains unsafe values
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        insecure_patterns = ['dev', 'change', 'default', 'test', 'secret', 'password']
        lower_key = cls._secret_key.lower()
        for pattern in insecure_patterns:
            if pattern in lower_key:
                raise RuntimeError(
                    f"CRITICAL: SECRET_KEY contains '{pattern}' which suggests it's not secure!"
                )

        if len(cls._secret_key) < 32:
            raise RuntimeError("CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!")

        return cls._secret_key

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SKIP_WEBHOOK_VERIFICATION = False
    SHOPIFY_API_SECRET = 'test-app-secret'
    SHOPIFY_API_KEY = ''
    ALLOW_SHOP_DOMAIN_AUTH = True
    CAMPAIGN_MULTI_FIRE = False
    INGESTION_MAX_ATTEMPTS = 3
    INGESTION_RETRY_BACKOFF_SECONDS = 0


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
