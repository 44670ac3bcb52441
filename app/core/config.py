
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    gateway_key_id: str = Field("", alias="RAZORPAY_KEY_ID")
    gateway_key_secret: str = Field(..., alias="RAZORPAY_KEY_SECRET")
    gateway_base_url: str = Field("https://api.razorpay.com/v1", alias="RAZORPAY_BASE_URL")
    gateway_timeout_seconds: float = Field(10.0, alias="GATEWAY_TIMEOUT_SECONDS")

    currency: str = Field("INR", alias="PAYMENT_CURRENCY")
    intent_ttl_hours: int = Field(24, alias="PAYMENT_INTENT_TTL_HOURS")
    upi_payee_address: str = Field("studentportal@upi", alias="UPI_PAYEE_ADDRESS")
    upi_payee_name: str = Field("Student Portal", alias="UPI_PAYEE_NAME")

    default_due_days: int = Field(30, alias="DEFAULT_DUE_DAYS")
    historical_due_days: int = Field(90, alias="HISTORICAL_DUE_DAYS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
