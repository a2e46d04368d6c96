"""
Configuration module for Dealer Matching.

Loads environment variables and provides configuration constants.
All sensitive values should be in .env file (never commit to git).
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class SupabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # Service role key for server-side operations

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=os.getenv("SUPABASE_KEY", ""),
        )


@dataclass
class AppConfig:
    """Main application configuration."""
    # Smoothing constant for learned make/model weights and price/mileage averages
    learning_rate: float = 0.3

    # Personalization boost (points added on top of the 0-100 base score)
    boost_cap: int = 25
    make_boost_points: float = 12.0
    model_boost_points: float = 8.0
    price_boost_points: float = 5.0
    price_tolerance_ratio: float = 0.25
    min_price_tolerance: float = 2000.0

    # Compare-and-swap attempts when saving a learned profile
    learner_max_retries: int = 5

    # Demo request rate limit (requests per window, per email)
    demo_rate_limit: int = 3
    demo_rate_window_minutes: int = 60

    # Display
    currency_symbol: str = "£"

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            learning_rate=float(os.getenv("LEARNING_RATE", "0.3")),
            boost_cap=int(os.getenv("BOOST_CAP", "25")),
            make_boost_points=float(os.getenv("MAKE_BOOST_POINTS", "12.0")),
            model_boost_points=float(os.getenv("MODEL_BOOST_POINTS", "8.0")),
            price_boost_points=float(os.getenv("PRICE_BOOST_POINTS", "5.0")),
            price_tolerance_ratio=float(os.getenv("PRICE_TOLERANCE_RATIO", "0.25")),
            min_price_tolerance=float(os.getenv("MIN_PRICE_TOLERANCE", "2000.0")),
            learner_max_retries=int(os.getenv("LEARNER_MAX_RETRIES", "5")),
            demo_rate_limit=int(os.getenv("DEMO_RATE_LIMIT", "3")),
            demo_rate_window_minutes=int(os.getenv("DEMO_RATE_WINDOW_MINUTES", "60")),
            currency_symbol=os.getenv("CURRENCY_SYMBOL", "£"),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "5000")),
        )


# Global configuration instances (lazy loaded)
_supabase_config: Optional[SupabaseConfig] = None
_app_config: Optional[AppConfig] = None


def get_supabase_config() -> SupabaseConfig:
    """Get Supabase configuration (cached)."""
    global _supabase_config
    if _supabase_config is None:
        _supabase_config = SupabaseConfig.from_env()
    return _supabase_config


def get_app_config() -> AppConfig:
    """Get app configuration (cached)."""
    global _app_config
    if _app_config is None:
        _app_config = AppConfig.from_env()
    return _app_config
