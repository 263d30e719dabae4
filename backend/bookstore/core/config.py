from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB Configuration
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "bookstore_db"
    MONGODB_TIMEOUT_MS: int = 5000

    # Enrichment cache windows (seconds)
    CART_CACHE_TTL_SECONDS: float = 30.0
    WISHLIST_CACHE_TTL_SECONDS: float = 60.0

    # Price monitoring
    PRICE_MONITOR_ENABLED: bool = True
    PRICE_CHECK_INTERVAL_SECONDS: float = 60 * 60  # hourly
    PRICE_CHECK_INITIAL_DELAY_SECONDS: float = 5 * 60
    CART_CLEANUP_INTERVAL_SECONDS: float = 60 * 60
    PRICE_HISTORY_LIMIT: int = 50

    # Wishlist limits
    WISHLIST_MAX_NOTES_LENGTH: int = 500
    WISHLIST_MAX_TAGS_PER_ITEM: int = 10
    WISHLIST_MAX_TAG_LENGTH: int = 50

    # Cart limits
    CART_MAX_ITEMS: int = 50
    CART_MAX_QUANTITY_PER_ITEM: int = 10
    CART_MAX_SAVED_ITEMS: int = 100
    CART_SESSION_EXPIRY_DAYS: int = 30
    CART_GUEST_EXPIRY_DAYS: int = 7
    GUEST_USER_PREFIX: str = "guest_"

    # Notifications
    BULK_NOTIFICATION_LIMIT: int = 500
    NOTIFICATION_PAGE_SIZE: int = 20

    # Offline queue
    OFFLINE_QUEUE_DIR: str = ".offline"
    CONNECTIVITY_CHECK_INTERVAL_SECONDS: float = 30.0

    # Application Settings
    LOG_LEVEL: str = "INFO"
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Bookstore Monitor"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
