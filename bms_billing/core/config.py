from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    """Billing service configuration with environment variable support"""
    app_name: str = "BMS Billing Core"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_database: str = "bms_billing"
    mongo_max_pool_size: int = 100
    mongo_min_pool_size: int = 10

    public_base_url: str = "http://localhost:8000"
    default_currency: str = "ETB"
    intent_ttl_minutes: int = 30

    provider_timeout_seconds: float = 15.0
    provider_initiate_timeout_seconds: float = 30.0
    provider_retry_attempts: int = 3
    invoice_number_retry_attempts: int = 5

    log_level: str = "INFO"
    log_json: bool = True

    # Chapa (card gateway)
    chapa_secret_key: Optional[str] = None
    chapa_webhook_secret: Optional[str] = None
    chapa_base_url: str = "https://api.chapa.co/v1"

    # Telebirr (mobile money)
    telebirr_app_id: Optional[str] = None
    telebirr_app_key: Optional[str] = None
    telebirr_base_url: str = "https://api.telebirr.et/v1"

    # CBE Birr (bank wallet)
    cbe_birr_merchant_id: Optional[str] = None
    cbe_birr_api_key: Optional[str] = None
    cbe_birr_base_url: str = "https://api.cbebirr.et/v1"

    # HelloCash (mobile money)
    hellocash_principal: Optional[str] = None
    hellocash_token: Optional[str] = None
    hellocash_base_url: str = "https://api-et.hellocash.net"

    # Manual bank transfer
    bank_transfer_bank_name: str = "Commercial Bank of Ethiopia"
    bank_transfer_account_name: Optional[str] = None
    bank_transfer_account_number: Optional[str] = None

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def validate_required_vars(self):
        """Validate that required settings are present"""
        required_vars = ["mongo_uri", "mongo_database", "public_base_url"]
        missing = [var for var in required_vars if not getattr(self, var)]
        if missing:
            raise ValueError(f"Missing required configuration: {missing}")
        if self.intent_ttl_minutes <= 0:
            raise ValueError("intent_ttl_minutes must be positive")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.validate_required_vars()
    return settings
