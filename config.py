# config.py - Configuration management for Workflow Automation Pro

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


class AppConfig:
    """
    Centralized configuration management for the application
    """

    # GHL OAuth / Marketplace App Configuration
    GHL_CLIENT_ID: str = os.getenv("GHL_CLIENT_ID", "")
    GHL_CLIENT_SECRET: str = os.getenv("GHL_CLIENT_SECRET", "")
    GHL_REDIRECT_URI: str = os.getenv("GHL_REDIRECT_URI", "http://localhost:8000/api/v1/integrations/ghl/callback")
    GHL_WEBHOOK_SECRET: str = os.getenv("GHL_WEBHOOK_SECRET", "")
    GHL_MCP_URL: str = os.getenv("GHL_MCP_URL", "https://services.leadconnectorhq.com/mcp/")

    # AI Configuration
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")

    # Billing Configuration
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_PRICE_ID: Optional[str] = os.getenv("STRIPE_PRICE_ID")
    TRIAL_PERIOD_DAYS: int = int(os.getenv("TRIAL_PERIOD_DAYS", "14"))

    # Server Configuration
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000/")
    CORS_ORIGINS: list = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # Authentication Configuration
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "default_secret_key")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = int(os.getenv("JWT_REFRESH_TOKEN_EXPIRE_DAYS", "7"))
    ACCOUNT_LOCKOUT_THRESHOLD: int = int(os.getenv("ACCOUNT_LOCKOUT_THRESHOLD", "5"))
    ACCOUNT_LOCKOUT_DURATION_MINUTES: int = int(os.getenv("ACCOUNT_LOCKOUT_DURATION_MINUTES", "30"))

    # Email Configuration
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM_EMAIL: str = os.getenv("SMTP_FROM_EMAIL", "")
    SMTP_FROM_NAME: str = os.getenv("SMTP_FROM_NAME", "Workflow Automation Pro")

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./workflow_automation.db")

    # Chatbot engine cache
    ENGINE_CACHE_TTL_SECONDS: int = int(os.getenv("ENGINE_CACHE_TTL_SECONDS", "1800"))
    ENGINE_CACHE_MAX_SIZE: int = int(os.getenv("ENGINE_CACHE_MAX_SIZE", "256"))

    @classmethod
    def validate_config(cls) -> bool:
        """
        Validate that required configuration is present
        """
        required_fields = [
            "JWT_SECRET_KEY",
            "GHL_CLIENT_ID",
            "GHL_CLIENT_SECRET"
        ]

        missing_fields = []
        for field in required_fields:
            if not getattr(cls, field):
                missing_fields.append(field)

        if missing_fields:
            logger.warning(f"❌ Missing required configuration: {', '.join(missing_fields)}")
            return False

        return True

    @classmethod
    def get_security_config(cls) -> dict:
        """
        Get security-related configuration
        """
        return {
            "ghl_webhook_secret_set": bool(cls.GHL_WEBHOOK_SECRET),
            "stripe_webhook_secret_set": bool(cls.STRIPE_WEBHOOK_SECRET),
            "jwt_algorithm": cls.JWT_ALGORITHM,
            "lockout_threshold": cls.ACCOUNT_LOCKOUT_THRESHOLD,
            "environment": cls.ENVIRONMENT,
            "debug": cls.DEBUG
        }
