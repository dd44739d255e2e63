import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()

CRON_SECRET = os.environ.get("CRON_SECRET", "").strip()

VAPID_PUBLIC_KEY = os.environ.get("VAPID_PUBLIC_KEY", "").strip()
VAPID_PRIVATE_KEY = os.environ.get("VAPID_PRIVATE_KEY", "").strip()
VAPID_SUBJECT = os.environ.get("VAPID_SUBJECT", "mailto:support@cinechrony.com").strip()

LETTERBOXD_IMPORT_LIMIT = max(1, _int_env("LETTERBOXD_IMPORT_LIMIT", 800))
LETTERBOXD_EXPORT_MAX_BYTES = 30 * 1024 * 1024
PASTE_LINE_LIMIT = 250

DIGEST_WATCHLIST_THRESHOLD = max(0, _int_env("DIGEST_WATCHLIST_THRESHOLD", 5))
DIGEST_WINDOW_DAYS = 7


def is_production() -> bool:
    return APP_ENV == "production"
