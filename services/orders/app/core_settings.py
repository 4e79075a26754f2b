from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "storefront"
    POSTGRES_USER: str = "storefront"
    POSTGRES_PASSWORD: str = "storefront"
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    BACKEND_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"
    PRODUCTS_SERVICE_URL: str = "http://products:8000"
    NOTIFICATIONS_SERVICE_URL: str = "http://notifications:8000"
    REDIS_URL: Optional[str] = None

    # Payment gateway
    GATEWAY_BASE_URL: str = "https://api-preprod.phonepe.com/apis/pg-sandbox"
    GATEWAY_CLIENT_ID: str = ""
    GATEWAY_CLIENT_SECRET: str = ""
    GATEWAY_CLIENT_VERSION: str = "1"
    GATEWAY_PAYMENT_EXPIRY_SECONDS: int = 1200
    GATEWAY_TOKEN_REFRESH_SKEW_SECONDS: int = 60

    # Carrier
    CARRIER_API_KEY: str = ""
    CARRIER_BOOK_URL: str = ""
    CARRIER_CANCEL_URL: str = ""
    CARRIER_CUSTOMER_CODE: str = ""
    CARRIER_COD_SERVICE_TYPE: str = "B2C SMART EXPRESS"
    CARRIER_PREPAID_SERVICE_TYPE: str = "B2C PRIORITY"
    CARRIER_COMMODITY_ID: str = "2"
    PARCEL_LENGTH_CM: Decimal = Decimal("10")
    PARCEL_WIDTH_CM: Decimal = Decimal("10")
    PARCEL_HEIGHT_CM: Decimal = Decimal("10")
    PARCEL_WEIGHT_KG: Decimal = Decimal("0.5")
    WAREHOUSE_NAME: str = "Storefront Warehouse"
    WAREHOUSE_PHONE: str = "+919876543210"
    WAREHOUSE_ADDRESS_LINE_1: str = "Warehouse Address Line 1"
    WAREHOUSE_PINCODE: str = "201301"
    WAREHOUSE_CITY: str = "Noida"
    WAREHOUSE_STATE: str = "Uttar Pradesh"
    RETURN_NAME: str = "Storefront Returns"
    RETURN_PHONE: str = "+919876543210"
    RETURN_ADDRESS_LINE_1: str = "Returns Desk, Sector-3"
    RETURN_PINCODE: str = "201301"
    RETURN_CITY: str = "Noida"
    RETURN_STATE: str = "Uttar Pradesh"
    RETURN_COUNTRY: str = "India"
    RETURN_EMAIL: str = "support@example.com"

    # Outbound call policy
    EXTERNAL_RETRY_ATTEMPTS: int = 3
    EXTERNAL_RETRY_BASE_DELAY: float = 0.5
    EXTERNAL_RETRY_MAX_DELAY: float = 4.0
    EXTERNAL_TIMEOUT_SECONDS: float = 10.0

    # Business rules
    ORDER_ID_PREFIX: str = "ORD"
    ORDER_ID_SEQUENCE_WIDTH: int = 6
    MIN_CHARGEABLE_AMOUNT: Decimal = Decimal("1.00")
    COD_ANONYMOUS_WINDOW_MINUTES: int = 5
    TRANSACTION_ACCESS_WINDOW_HOURS: int = 24
    FIRST_TIME_COUPON_SCOPE: Literal["global", "coupon"] = "global"
    SHIPMENT_BOOKING_CLAIM_SECONDS: int = 300
    PAYMENT_RECONCILE_AFTER_MINUTES: int = 15

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
