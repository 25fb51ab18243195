import os
from pathlib import Path
from urllib.parse import quote_plus

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent.parent

# Characters that must be percent-encoded in the password part of MONGO_URL
_SPECIAL_PASSWORD_CHARS = ("@", "#", "$", "%", "&", "+", "=")


def load_env() -> None:
    load_dotenv(BACKEND_DIR / ".env")


def encode_mongo_url(mongo_url: str) -> str:
    """URL-encode the password of a mongodb:// URL if it holds special characters."""
    if "://" not in mongo_url:
        return mongo_url
    protocol_end = mongo_url.find("://") + 3
    at_pos = mongo_url.rfind("@")
    if at_pos <= protocol_end:
        return mongo_url
    user_pass = mongo_url[protocol_end:at_pos]
    if ":" not in user_pass:
        return mongo_url
    username, password = user_pass.split(":", 1)
    if not any(c in password for c in _SPECIAL_PASSWORD_CHARS):
        return mongo_url
    return mongo_url[:protocol_end] + f"{username}:{quote_plus(password)}" + mongo_url[at_pos:]


def get_mongo_url() -> str:
    mongo_url = os.environ.get("MONGO_URL")
    if not mongo_url:
        raise ValueError("MONGO_URL environment variable is not set. Please check your .env file.")
    return encode_mongo_url(mongo_url)


def get_db_name() -> str:
    return os.environ.get("DB_NAME", "portal_db")


def env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)
