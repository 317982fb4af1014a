import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _num(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class Config:
    DATABASE_URL: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    SECRET_KEY: str = field(default_factory=lambda: os.getenv("SECRET_KEY", "dev-secret"))
    ENV: str = field(default_factory=lambda: os.getenv("FLASK_ENV", "development"))

    # White-label store identity
    BRAND_NAME: str = field(default_factory=lambda: os.getenv("BRAND_NAME", "DC Store"))
    APP_URL: str = field(default_factory=lambda: os.getenv("APP_URL", "https://store.digitalcare.site"))
    CONTACT_EMAIL: str = field(default_factory=lambda: os.getenv("CONTACT_EMAIL", "support@dcstore.com"))
    CONTACT_PHONE: str = field(default_factory=lambda: os.getenv("CONTACT_PHONE", "+880 1570-260118"))
    CURRENCY_CODE: str = field(default_factory=lambda: os.getenv("CURRENCY_CODE", "BDT"))
    CURRENCY_SYMBOL: str = field(default_factory=lambda: os.getenv("CURRENCY_SYMBOL", "৳"))

    # Shipping
    DEFAULT_SHIPPING: float = field(default_factory=lambda: _num("DEFAULT_SHIPPING", 60))
    EXPRESS_SHIPPING: float = field(default_factory=lambda: _num("EXPRESS_SHIPPING", 120))
    FREE_SHIPPING_THRESHOLD: float = field(default_factory=lambda: _num("FREE_SHIPPING_THRESHOLD", 1000))

    # Integrations
    STRIPE_SECRET_KEY: str = field(default_factory=lambda: os.getenv("STRIPE_SECRET_KEY", ""))
    RESEND_API_KEY: str = field(default_factory=lambda: os.getenv("RESEND_API_KEY", ""))
    EMAIL_FROM: str = field(default_factory=lambda: os.getenv("EMAIL_FROM", "DC Store <onboarding@resend.dev>"))
    FACEBOOK_PIXEL_ID: str = field(default_factory=lambda: os.getenv("FACEBOOK_PIXEL_ID", ""))
    FACEBOOK_CONVERSIONS_API_TOKEN: str = field(default_factory=lambda: os.getenv("FACEBOOK_CONVERSIONS_API_TOKEN", ""))
    GOOGLE_API_KEY: str = field(default_factory=lambda: os.getenv("GOOGLE_API_KEY", ""))
    GEMINI_MODEL: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.0-flash"))
    REVALIDATE_SECRET: str = field(default_factory=lambda: os.getenv("REVALIDATE_SECRET", ""))

    # Feature flags
    FEATURE_REVIEWS: bool = field(default_factory=lambda: _flag("FEATURE_REVIEWS"))
    FEATURE_WISHLIST: bool = field(default_factory=lambda: _flag("FEATURE_WISHLIST"))
    FEATURE_GUEST_CHECKOUT: bool = field(default_factory=lambda: _flag("FEATURE_GUEST_CHECKOUT"))


def get_config() -> "Config":
    return Config()
