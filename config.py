"""
Application Configuration Module

Centralizes all configuration settings, loaded from environment variables
with sensible defaults.
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration."""

    # Application
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    APP_ENV: str = os.getenv("APP_ENV", os.getenv("FLASK_ENV", "development"))
    DEBUG: bool = os.getenv("APP_DEBUG", os.getenv("FLASK_DEBUG", "1")) == "1"

    # File uploads
    MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "50"))
    MAX_CONTENT_LENGTH: int = MAX_FILE_SIZE_MB * 1024 * 1024
    ALLOWED_EXTENSIONS: set[str] = {"xlsm", "xlsb", "xls"}

    # Output package
    ZIP_COMPRESSION_LEVEL: int = int(os.getenv("ZIP_COMPRESSION_LEVEL", "9"))

    # VBA project: fill byte for DPB=/CMG=/GC= payloads ("null" or "space")
    VBA_HASH_FILL: str = os.getenv("VBA_HASH_FILL", "null")

    # Security relaxations
    REMOVE_SHEET_PROTECTION: bool = _flag("REMOVE_SHEET_PROTECTION", "1")
    REMOVE_WORKBOOK_PROTECTION: bool = _flag("REMOVE_WORKBOOK_PROTECTION", "1")
    ENABLE_EXTERNAL_LINKS: bool = _flag("ENABLE_EXTERNAL_LINKS", "1")
    # "1" opens in Excel but openpyxl refuses it; use "always" when reloading with openpyxl
    UPDATE_LINKS_VALUE: str = os.getenv("UPDATE_LINKS_VALUE", "1")
    ENSURE_FILE_VERSION: bool = _flag("ENSURE_FILE_VERSION", "1")
    MARK_DOCUMENT_TRUSTED: bool = _flag("MARK_DOCUMENT_TRUSTED", "1")
    REMOVE_VBA_SIGNATURE: bool = _flag("REMOVE_VBA_SIGNATURE", "1")
    ADD_TRUST_SETTINGS_PART: bool = _flag("ADD_TRUST_SETTINGS_PART", "0")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


class ProductionConfig(Config):
    """Production configuration overrides."""
    DEBUG = False
    APP_ENV = "production"
    LOG_LEVEL = "WARNING"


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    APP_ENV = "development"
    LOG_LEVEL = "DEBUG"


def get_config() -> type[Config]:
    """Return the appropriate config class based on APP_ENV."""
    env = os.getenv("APP_ENV", os.getenv("FLASK_ENV", "development"))
    if env == "production":
        return ProductionConfig
    return DevelopmentConfig
