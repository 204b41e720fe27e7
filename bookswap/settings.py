from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()

def _norm_url(v: str) -> str:
    v = (v or "").strip()
    return v.rstrip("/")

class Settings(BaseModel):
    db_path: str = os.getenv("DB_PATH", "bookswap.db")
    notify_webhook_url: str = _norm_url(os.getenv("NOTIFY_WEBHOOK_URL", ""))
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))
    max_message_length: int = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

settings = Settings()
