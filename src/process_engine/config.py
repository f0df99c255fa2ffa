"""
Engine settings read from the environment
"""
import os
from dataclasses import dataclass
from typing import Optional


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class EngineSettings:
    """Runtime configuration"""
    database_url: str = "sqlite+aiosqlite:///./process_engine.db"
    max_steps_per_advance: int = 100
    max_advance_calls: int = 50
    default_task_due_seconds: Optional[int] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            max_steps_per_advance=int(os.getenv("ENGINE_MAX_STEPS_PER_ADVANCE", str(cls.max_steps_per_advance))),
            max_advance_calls=int(os.getenv("ENGINE_MAX_ADVANCE_CALLS", str(cls.max_advance_calls))),
            default_task_due_seconds=_optional_int(os.getenv("ENGINE_DEFAULT_TASK_DUE_SECONDS")),
            api_host=os.getenv("API_HOST", cls.api_host),
            api_port=int(os.getenv("API_PORT", str(cls.api_port))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
