"""Environment configuration for the settlement backend."""

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


class Settings:
    def __init__(self):
        # MongoDB
        self.MONGO_URL: str = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self.DB_NAME: str = os.getenv("DB_NAME", "estate_settlement")

        # Public app URL, used for gateway redirects
        self.APP_URL: str = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
        self.DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "NGN")

        # Flutterwave
        self.FLUTTERWAVE_SECRET_KEY: str = os.getenv("FLUTTERWAVE_SECRET_KEY", "")
        self.FLUTTERWAVE_WEBHOOK_SECRET: str = os.getenv("FLUTTERWAVE_WEBHOOK_SECRET", "")
        self.FLUTTERWAVE_BASE_URL: str = os.getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com")

        # Monnify
        self.MONNIFY_API_KEY: str = os.getenv("MONNIFY_API_KEY", "")
        self.MONNIFY_SECRET_KEY: str = os.getenv("MONNIFY_SECRET_KEY", "")
        self.MONNIFY_CONTRACT_CODE: str = os.getenv("MONNIFY_CONTRACT_CODE", "")
        self.MONNIFY_BASE_URL: str = os.getenv("MONNIFY_BASE_URL", "https://api.monnify.com")

        # Stripe
        self.STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")

        self.PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))

        # Email
        self.SMTP_HOST: str = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
        self.SMTP_USER: str = os.getenv("SMTP_USER", "")
        self.SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
        self.EMAIL_FROM: str = os.getenv("EMAIL_FROM", "no-reply@estate.local")

    def webhook_secrets(self) -> dict:
        """Shared secret each provider signs its webhooks with."""
        return {
            "flutterwave": self.FLUTTERWAVE_WEBHOOK_SECRET,
            "monnify": self.MONNIFY_SECRET_KEY,
            "stripe": self.STRIPE_WEBHOOK_SECRET,
        }


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
