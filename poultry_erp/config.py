"""
Configuration for the poultry trading ERP core.
"""

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

import os
from typing import Optional


class Config:
    """Base configuration."""

    # Storage
    DATA_PATH: str = os.getenv("ERP_DATA_PATH", os.path.join(os.getcwd(), "erp_data.json"))

    # Auto-save
    AUTO_SAVE_INTERVAL_MINUTES: float = float(os.getenv("AUTO_SAVE_INTERVAL_MINUTES", "5"))

    # Invoicing
    DEFAULT_TAX_RATE_PERCENT: float = float(os.getenv("DEFAULT_TAX_RATE_PERCENT", "18"))
    INVOICE_DUE_DAYS: int = int(os.getenv("INVOICE_DUE_DAYS", "30"))

    # Delivery documents
    MAX_LINE_UNITS: int = 60  # cages per delivery

    # Bulk text parsing
    HEADER_MIN_LENGTH: int = 3

    # Customer name matching for fast invoicing
    CUSTOMER_MATCH_THRESHOLD: float = 0.85

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None

    @classmethod
    def validate(cls) -> None:
        """Validate configuration."""
        if cls.AUTO_SAVE_INTERVAL_MINUTES <= 0:
            raise ValueError("AUTO_SAVE_INTERVAL_MINUTES must be positive")

        if not 0 <= cls.DEFAULT_TAX_RATE_PERCENT <= 100:
            raise ValueError(f"Invalid DEFAULT_TAX_RATE_PERCENT: {cls.DEFAULT_TAX_RATE_PERCENT}")

        if cls.LOG_LEVEL.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"Invalid LOG_LEVEL: {cls.LOG_LEVEL}")


class DevelopmentConfig(Config):
    """Development configuration."""
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration."""
    LOG_LEVEL = "INFO"


class TestConfig(Config):
    """Test configuration."""
    LOG_LEVEL = "DEBUG"
    LOG_FILE = None
    AUTO_SAVE_INTERVAL_MINUTES = 0.001


def get_config(env: str = None) -> Config:
    """Get configuration based on environment."""
    if env is None:
        env = os.getenv("ENV", "development").lower()

    if env == "production":
        config = ProductionConfig()
    elif env == "test":
        config = TestConfig()
    else:
        config = DevelopmentConfig()

    # Validate configuration on creation
    config.validate()
    return config
