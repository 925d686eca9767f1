import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    db_path: str = "redconnect.db"
    actor: str = "operator"
    compat_file: Optional[str] = None
    log_level: str = "INFO"


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Defaults for the command line, overridable from the environment or a .env file."""
    load_dotenv(env_file)
    return Settings(
        db_path=os.getenv("REDCONNECT_DB", Settings.db_path),
        actor=os.getenv("REDCONNECT_ACTOR", Settings.actor),
        compat_file=os.getenv("REDCONNECT_COMPAT_FILE") or None,
        log_level=os.getenv("REDCONNECT_LOG_LEVEL", Settings.log_level).upper(),
    )
