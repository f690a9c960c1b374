"""
Environment driven settings
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class EngineSettings:
    """Runtime settings, read from STEPFLOW_* environment variables"""
    database_url: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    log_level: str = "INFO"
    default_step_timeout: Optional[float] = None
    max_concurrency: Optional[int] = None
    workflows_dir: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        if dotenv:
            load_dotenv()
        return cls(
            database_url=os.getenv("STEPFLOW_DATABASE_URL") or None,
            api_host=os.getenv("STEPFLOW_API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("STEPFLOW_API_PORT", "8000")),
            api_reload=os.getenv("STEPFLOW_API_RELOAD", "false").lower() == "true",
            log_level=os.getenv("STEPFLOW_LOG_LEVEL", "INFO").upper(),
            default_step_timeout=_optional_float(os.getenv("STEPFLOW_DEFAULT_STEP_TIMEOUT")),
            max_concurrency=_optional_int(os.getenv("STEPFLOW_MAX_CONCURRENCY")),
            workflows_dir=os.getenv("STEPFLOW_WORKFLOWS_DIR") or None,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
