import os

from pydantic import BaseModel


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    admin_email: str = "admin@daykart.com"
    admin_password: str = "admin123"

    merchant_upi_id: str = "9652377187@ybl"
    merchant_name: str = "DAYKART"
    merchant_code: str = "5411"

    payment_window_seconds: int = 300
    payment_simulation_enabled: bool = False

    referral_bonus: float = 50
    referral_min_order: float = 1999
    referral_min_redemption: float = 100

    session_ttl_days: int = 3
    site_url: str = "http://localhost:5173"
    notification_ttl_seconds: float = 3

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            admin_email=os.getenv("ADMIN_EMAIL", "admin@daykart.com"),
            admin_password=os.getenv("ADMIN_PASSWORD", "admin123"),
            merchant_upi_id=os.getenv("MERCHANT_UPI_ID", "9652377187@ybl"),
            merchant_name=os.getenv("MERCHANT_NAME", "DAYKART"),
            merchant_code=os.getenv("MERCHANT_CODE", "5411"),
            payment_window_seconds=int(os.getenv("PAYMENT_WINDOW_SECONDS", 300)),
            payment_simulation_enabled=_flag("PAYMENT_SIMULATION_ENABLED"),
            referral_bonus=float(os.getenv("REFERRAL_BONUS", 50)),
            referral_min_order=float(os.getenv("REFERRAL_MIN_ORDER", 1999)),
            referral_min_redemption=float(os.getenv("REFERRAL_MIN_REDEMPTION", 100)),
            session_ttl_days=int(os.getenv("SESSION_TTL_DAYS", 3)),
            site_url=os.getenv("SITE_URL", "http://localhost:5173"),
            notification_ttl_seconds=float(os.getenv("NOTIFICATION_TTL_SECONDS", 3)),
        )
