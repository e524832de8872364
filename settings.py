"""
Application settings
Centralized configuration from environment variables
"""
import os
from dotenv import load_dotenv

load_dotenv()

DEFAULT_ORIGINS = "http://localhost:5174,http://localhost:5173,http://localhost:3000,https://shelfybook.netlify.app"


class Settings:
    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "books-library")

    # Firebase service account, base64 encoded JSON
    FB_SERVICE_KEY: str = os.getenv("FB_SERVICE_KEY", "")

    # Service
    PORT: int = int(os.getenv("PORT", 5000))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: list = [o.strip() for o in os.getenv("CORS_ORIGINS", DEFAULT_ORIGINS).split(",") if o.strip()]

    # Echo internal fault text in error responses (development only)
    EXPOSE_ERROR_DETAILS: bool = os.getenv("EXPOSE_ERROR_DETAILS", "0") == "1"

    BORROW_LIMIT: int = int(os.getenv("BORROW_LIMIT", 3))

    # Application
    APP_NAME: str = "Book Library API"
    APP_VERSION: str = "1.0.0"


settings = Settings()
