import os
from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    kafka_enabled: bool = os.getenv("KAFKA_ENABLED", "false").lower() == "true"
    kafka_consumer_group: str = os.getenv("KAFKA_CONSUMER_GROUP", "treasury-service")

    # Platform commission retained on every sale / subscription
    commission_rate: Decimal = Decimal(os.getenv("COMMISSION_RATE", "0.125"))
    tax_rate: Decimal = Decimal(os.getenv("TAX_RATE", "0.1"))
    discount_rate: Decimal = Decimal(os.getenv("DISCOUNT_RATE", "0"))
    currency: str = os.getenv("CURRENCY", "USD")

    # Weekly payout cadence (weekday: Monday=0 ... Sunday=6)
    payout_weekday: int = int(os.getenv("PAYOUT_WEEKDAY", "4"))
    payout_hour: int = int(os.getenv("PAYOUT_HOUR", "8"))
    payout_minute: int = int(os.getenv("PAYOUT_MINUTE", "0"))
    payout_timezone: str = os.getenv("TIMEZONE", "America/New_York")
    payout_method: str = os.getenv("PAYOUT_METHOD", "ACH")
    payout_arrival_days: int = int(os.getenv("PAYOUT_ARRIVAL_DAYS", "3"))
    scheduler_autostart: bool = os.getenv("SCHEDULER_AUTOSTART", "true").lower() == "true"

    business_account_holder: str = os.getenv("BUSINESS_ACCOUNT_HOLDER", "Pending Setup")
    business_bank_name: str = os.getenv("BUSINESS_BANK_NAME", "Pending Setup")
    business_account_number: str = os.getenv("BUSINESS_ACCOUNT_NUMBER", "")
    business_routing_number: str = os.getenv("BUSINESS_ROUTING_NUMBER", "")
    business_account_type: str = os.getenv("BUSINESS_ACCOUNT_TYPE", "checking")

    bank_gateway: str = os.getenv("BANK_GATEWAY", "simulated")  # simulated|http
    bank_gateway_url: str = os.getenv("BANK_GATEWAY_URL", "http://bank-gateway:8080")
    bank_gateway_api_key: Optional[str] = os.getenv("BANK_GATEWAY_API_KEY")
    bank_gateway_timeout_seconds: float = float(os.getenv("BANK_GATEWAY_TIMEOUT_SECONDS", "30"))
    simulated_transfer_delay_seconds: float = float(os.getenv("SIMULATED_TRANSFER_DELAY_SECONDS", "1.0"))

    storage_backend: str = os.getenv("STORAGE_BACKEND", "memory")  # memory|sql
    database_url: str = os.getenv("TREASURY_DATABASE_URL", "sqlite:///./treasury.db")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
