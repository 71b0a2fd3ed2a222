# attendance_etl/core/config.py
import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

from attendance_etl.core.errors import ConfigurationError

load_dotenv()


def _split(v: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in v.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///attendance.db")
    woocommerce_url: str = os.getenv("WOOCOMMERCE_URL", "")
    woocommerce_consumer_key: str = os.getenv("WOOCOMMERCE_CONSUMER_KEY", "")
    woocommerce_consumer_secret: str = os.getenv("WOOCOMMERCE_CONSUMER_SECRET", "")
    loops_api_key: str = os.getenv("LOOPS_API_KEY", "")
    loops_active_members_list_id: str = os.getenv("LOOPS_ACTIVE_MEMBERS_LIST_ID", "")
    state_dir: str = os.getenv("STATE_DIR", ".state")
    backup_dir: str = os.getenv("BACKUP_DIR", "backups")
    request_delay_ms: int = int(os.getenv("REQUEST_DELAY_MS", "500"))
    max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
    checkpoint_every: int = int(os.getenv("CHECKPOINT_EVERY", "1"))
    never_merge_patterns: Tuple[str, ...] = _split(os.getenv("NEVER_MERGE_PATTERNS", ""))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = os.getenv("LOG_JSON", "1") not in ("0", "false", "no")

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every empty setting among ``names``."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigurationError(
                "missing configuration: " + ", ".join(n.upper() for n in missing)
            )


settings = Settings()
