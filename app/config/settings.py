"""
Application settings using Pydantic Settings.

Loads configuration from environment variables with validation.
"""

import json
from typing import Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are loaded from .env file or environment variables.
    Uses Pydantic for validation and type checking.
    """

    # App Configuration
    APP_NAME: str = Field(default="Dynamic Position Manager")
    APP_VERSION: str = Field(default="1.0.0")
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Database
    MONGODB_URL: str = Field(default="mongodb://localhost:27017", description="MongoDB connection string")
    MONGODB_DB_NAME: str = Field(default="dynamic_positions", description="MongoDB database name")
    MONGODB_USE_TRANSACTIONS: bool = Field(
        default=True,
        description="Use multi-document transactions (requires a replica set)"
    )

    # Exchange (Gate.io futures)
    GATEIO_BASE_URL: str = Field(default="https://api.gateio.ws")
    GATEIO_API_KEY: str = Field(default="", description="API key for the default credential")
    GATEIO_API_SECRET: str = Field(default="", description="API secret for the default credential")
    EXCHANGE_CREDENTIALS: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="Extra named credentials: {ref: {api_key, api_secret}}"
    )
    EXCHANGE_REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Monitoring loops
    AUTO_START_MONITORING: bool = Field(default=False)
    FILL_CHECK_INTERVAL_SECONDS: float = Field(default=30.0)
    ORCHESTRATOR_CYCLE_SECONDS: float = Field(default=10.0)

    # Stop-loss management
    SL_MAX_RETRIES: int = Field(default=3)
    SL_RETRY_DELAY_SECONDS: float = Field(default=1.0)
    BREAK_EVEN_BUFFER: float = Field(default=0.0005)
    TRAILING_DISTANCE: float = Field(default=0.01)

    # Multi-tier sizing
    MULTI_TIER_MIN_CONTRACTS: int = Field(default=5)
    TIER1_PRICE_OFFSET: float = Field(default=0.015)
    TIER2_PRICE_OFFSET: float = Field(default=0.025)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE_PATH: str = Field(default="logs/app.log")

    # CORS
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v) -> List[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return []

    @field_validator("EXCHANGE_CREDENTIALS", mode="before")
    @classmethod
    def parse_exchange_credentials(cls, v) -> Dict[str, Dict[str, str]]:
        """Parse named credentials from a JSON string or mapping."""
        if isinstance(v, str):
            if not v.strip():
                return {}
            return json.loads(v)
        return v or {}

    @field_validator("FILL_CHECK_INTERVAL_SECONDS", "ORCHESTRATOR_CYCLE_SECONDS")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Validate loop intervals are positive."""
        if v <= 0:
            raise ValueError("Loop intervals must be positive")
        return v

    @field_validator("SL_MAX_RETRIES")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate retry count is not negative."""
        if v < 0:
            raise ValueError("SL_MAX_RETRIES must not be negative")
        return v

    @field_validator("BREAK_EVEN_BUFFER", "TRAILING_DISTANCE", "TIER1_PRICE_OFFSET", "TIER2_PRICE_OFFSET")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Validate price fractions are within (0, 1)."""
        if not 0 < v < 1:
            raise ValueError("Price fractions must be between 0 and 1")
        return v

    def exchange_credentials(self) -> Dict[str, Dict[str, str]]:
        """
        All configured credentials keyed by reference.

        The "default" reference is built from GATEIO_API_KEY/GATEIO_API_SECRET
        when they are set.
        """
        credentials = dict(self.EXCHANGE_CREDENTIALS)
        if self.GATEIO_API_KEY and self.GATEIO_API_SECRET:
            credentials.setdefault("default", {
                "api_key": self.GATEIO_API_KEY,
                "api_secret": self.GATEIO_API_SECRET,
            })
        return credentials

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


# Global settings instance
def get_settings() -> Settings:
    """Get settings instance (lazy loading)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

_settings: Settings | None = None

# Try to initialize settings on import
try:
    settings = Settings()
    _settings = settings
except Exception as e:
    # Invalid values in .env; settings should be fixed before startup
    print(f"Warning: Could not load settings: {str(e)}")
    print("Please check the .env file (see env.example)")
    settings = None  # type: ignore
