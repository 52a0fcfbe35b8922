import os

from dotenv import load_dotenv

# Load .env file with explicit UTF-8 encoding
load_dotenv(encoding="utf-8")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./stamp_engine.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _bool_env("LOG_JSON", False)

CORS_ALLOW_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ALLOW_ORIGINS",
        "http://localhost:3000,https://localhost:3000,http://127.0.0.1:3000,https://127.0.0.1:3000",
    ).split(",")
    if o.strip()
]

# ─── WalletPush ───────────────────────────────────────────────────
WALLETPUSH_BASE_URL = os.getenv("WALLETPUSH_BASE_URL", "https://app2.walletpush.io/api/v1").rstrip("/")
WALLETPUSH_TIMEOUT_SECONDS = _float_env("WALLETPUSH_TIMEOUT_SECONDS", 10.0)

# ─── Notifications ────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv("SLACK_WEBHOOK_URL") or None
SLACK_TIMEOUT_SECONDS = _float_env("SLACK_TIMEOUT_SECONDS", 10.0)

# ─── Anti-abuse ───────────────────────────────────────────────────
TOKEN_GRACE_WINDOW_MINUTES = _int_env("TOKEN_GRACE_WINDOW_MINUTES", 30)
EARN_RATE_LIMIT_PER_USER_PER_HOUR = _int_env("EARN_RATE_LIMIT_PER_USER_PER_HOUR", 10)
EARN_RATE_LIMIT_PER_IP_PER_HOUR = _int_env("EARN_RATE_LIMIT_PER_IP_PER_HOUR", 20)
IP_VELOCITY_THRESHOLD = _int_env("IP_VELOCITY_THRESHOLD", 3)
IP_VELOCITY_WINDOW_MINUTES = _int_env("IP_VELOCITY_WINDOW_MINUTES", 10)

# ─── Redemption / reporting ───────────────────────────────────────
REDEMPTION_DISPLAY_WINDOW_MINUTES = _int_env("REDEMPTION_DISPLAY_WINDOW_MINUTES", 10)
CONSUME_RATE_LIMIT_MINUTES = _int_env("CONSUME_RATE_LIMIT_MINUTES", 5)
AVG_REWARD_VALUE = _float_env("AVG_REWARD_VALUE", 3.0)
NEAR_REWARD_MARGIN = _int_env("NEAR_REWARD_MARGIN", 2)
