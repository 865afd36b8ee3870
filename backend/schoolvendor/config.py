"""
School Vendor Configuration Module

Loads environment variables for the order/payment backend.
"""
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Download links are signed with an environment-based secret
    - Demo mode exposes error types in 500 responses (development only)
    - Money values are decimals with 2-place precision
    """

    # Runtime
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./schoolvendor.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Public URLs
    api_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # Digital delivery
    download_link_secret: str = "download_secret_key_demo_only_change_me"
    download_link_ttl_hours: int = 72

    # Checkout pricing
    default_currency: Literal["GHS", "USD", "EUR", "GBP"] = "GHS"
    tax_rate: Decimal = Decimal("0.05")
    shipping_cost_standard: Decimal = Decimal("25.00")
    shipping_cost_express: Decimal = Decimal("50.00")
    shipping_cost_pickup: Decimal = Decimal("0.00")

    # Payments
    transaction_expiry_hours: int = 2
    expiry_sweep_interval_minutes: int = 10

    # Manual settlement instructions (shown to customers, never secrets)
    bank_name: str = "School Vendor Bank"
    bank_account_number: str = "1234567890"
    bank_account_name: str = "School Vendor Account"
    bank_swift_code: str = "SCHVEND"
    wire_recipient_name: str = "School Vendor Finance"
    wire_recipient_country: str = "Ghana"
    wire_recipient_city: str = "Accra"
    wire_recipient_address: str = "123 Education Street"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
