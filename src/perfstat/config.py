from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

class AppSettings(BaseSettings):
    name: str = "perfstat"
    version: str = "1.0.0"

class PathSettings(BaseSettings):
    db_path: Path = Path("./data/perfstat.db")
    catalog_path: Path = Path("./config/catalog.yaml")
    rollup_path: Path = Path("./config/rollup.yaml")
    uploads_dir: Path = Path("./data/uploads/performanceDocs")
    uploads_base_url: str = "/uploads/performanceDocs/"


class EngineSettings(BaseSettings):
    # Question text fragments that identify the "count" question driving DATE sub-fields.
    date_count_markers: list[str] = ["No. of Police Sabha"]
    matrix_blank_value: str = "0"
    flat_blank_value: str = ""
    document_types: list[str] = ["PDF_DOCUMENT", "WORD_DOCUMENT", "DOCUMENT", "FILE"]
    max_date_fields: int = 100


class SpecialStep(BaseModel):
    """
    Role-specific module jump. Only applies to the single module boundary it names.
    """
    role: str
    module_id: int
    direction: Literal["next", "previous"]
    step: int = 2


class NavigationSettings(BaseSettings):
    max_module_search: int = 20
    max_topics_per_module: int = 30
    probe_delay_seconds: float = 0.12
    probe_error_delay_seconds: float = 0.2
    probe_base_url: Optional[str] = None
    probe_timeout_seconds: float = 10.0
    special_steps: list[SpecialStep] = [
        SpecialStep(role="Special Reserved Battalion", module_id=21, direction="next", step=2),
        SpecialStep(role="Special Reserved Battalion", module_id=23, direction="previous", step=2),
    ]


class AutoSaveSettings(BaseSettings):
    enabled: bool = True
    interval_seconds: float = 30.0

class SecuritySettings(BaseSettings):
    """
    Optional request guardrails.
    """
    api_token: Optional[str] = None  # Bearer token or X-API-Key
    max_upload_mb: int = 15  # Hard cap for multipart uploads (Content-Length guard)
    max_json_kb: int = 1024  # Cap for JSON bodies (field changes, save-statistics)

class LoggingSettings(BaseSettings):
    log_requests: bool = True
    format: str = "console"  # console | json
    level: str = "INFO"

class SessionSettings(BaseSettings):
    ttl_seconds: int = 4 * 3600


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_nested_delimiter="__", env_file=".env", extra="ignore")
    app: AppSettings = AppSettings()
    paths: PathSettings = PathSettings()
    engine: EngineSettings = EngineSettings()
    navigation: NavigationSettings = NavigationSettings()
    autosave: AutoSaveSettings = AutoSaveSettings()
    security: SecuritySettings = SecuritySettings()
    logging: LoggingSettings = LoggingSettings()
    sessions: SessionSettings = SessionSettings()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        # Load from default path if exists
        default_path = Path("config/settings.yaml")
        path = config_path or (default_path if default_path.exists() else None)

        if not path:
            return cls()

        with open(path, "r") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

settings = Settings.load()
