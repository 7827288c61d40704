import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except (TypeError, ValueError):
        return default


# --- Assistant server (OpenCode) ---
OPENCODE_BASE_URL = os.getenv("OPENCODE_BASE_URL", "http://127.0.0.1:4096").rstrip("/")
# Optional project directory passed as ?directory= on every request
OPENCODE_DIRECTORY = os.getenv("OPENCODE_DIRECTORY") or None
OPENCODE_REQUEST_TIMEOUT = _env_float("OPENCODE_REQUEST_TIMEOUT", 30.0)

# --- Event stream ---
RECONNECT_BASE_DELAY = _env_float("RECONNECT_BASE_DELAY", 5.0)
RECONNECT_MAX_DELAY = _env_float("RECONNECT_MAX_DELAY", 60.0)
STOP_GRACE_SECONDS = _env_float("STOP_GRACE_SECONDS", 5.0)

# --- Authorization gate ---
AUTH_TIMEOUT_SECONDS = _env_int("AUTH_TIMEOUT_SECONDS", 15 * 60)

# --- Rendering ---
# What to do with a transcript heading that maps to no known section:
# "answer" folds it into the answer with a bold lead-in, "drop" discards it.
UNKNOWN_HEADING_POLICY = os.getenv("UNKNOWN_HEADING_POLICY", "answer").strip().lower()
if UNKNOWN_HEADING_POLICY not in ("answer", "drop"):
    UNKNOWN_HEADING_POLICY = "answer"

# Reaction shown on a user's message while its prompt is being submitted
LOADING_EMOJI = os.getenv("LOADING_EMOJI", "Typing")

# --- Telegram Config ---
BOT_TOKEN = os.getenv("BOT_TOKEN")

# Authorized chat IDs - only these chats can use the bot
# Set via ALLOWED_CHATS env var as comma-separated Telegram chat IDs
# Example: ALLOWED_CHATS=-1001234567890,-1009876543210
_allowed_chats_str = os.getenv("ALLOWED_CHATS", "")
ALLOWED_CHATS: set[int] = {
    int(cid.strip()) for cid in _allowed_chats_str.split(",") if cid.strip()
}

# --- Feishu / Lark Config ---
FEISHU_APP_ID = os.getenv("FEISHU_APP_ID")
FEISHU_APP_SECRET = os.getenv("FEISHU_APP_SECRET")
# "feishu" (open.feishu.cn) or "lark" (open.larksuite.com)
FEISHU_DOMAIN = os.getenv("FEISHU_DOMAIN", "feishu").strip().lower()
# "ws" (SDK long connection) or "webhook" (HTTP event callbacks)
FEISHU_MODE = os.getenv("FEISHU_MODE", "ws").strip().lower()
FEISHU_WEBHOOK_HOST = os.getenv("FEISHU_WEBHOOK_HOST", "0.0.0.0")
FEISHU_WEBHOOK_PORT = _env_int("FEISHU_WEBHOOK_PORT", 8080)
FEISHU_WEBHOOK_PATH = os.getenv("FEISHU_WEBHOOK_PATH", "/feishu/webhook")
# From the developer console, Events & Callbacks -> Encryption Strategy
FEISHU_ENCRYPT_KEY = os.getenv("FEISHU_ENCRYPT_KEY", "")
FEISHU_VERIFICATION_TOKEN = os.getenv("FEISHU_VERIFICATION_TOKEN", "")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE") or None
