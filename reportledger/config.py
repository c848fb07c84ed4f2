from dataclasses import dataclass
import json
import os
from pathlib import Path

from dotenv import load_dotenv

from reportledger.errors import ConfigurationError
from reportledger.schemas import ThresholdMode, ToolConfig
from reportledger.thresholds import Threshold, build_threshold


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    workspace_dir: str
    generated_dir: str
    user_content_dir: str
    test_time_margin_ms: int
    max_download_retries: int
    retry_backoff_seconds: float
    download_timeout_seconds: float
    schedule_hour_utc: int
    schedule_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "reportledger"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./reportledger.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        workspace_dir=os.getenv("WORKSPACE_DIR", "."),
        generated_dir=os.getenv("GENERATED_DIR", "generatedJUnitFiles"),
        user_content_dir=os.getenv("USER_CONTENT_DIR", ""),
        test_time_margin_ms=int(os.getenv("TEST_TIME_MARGIN_MS", "3000")),
        max_download_retries=int(os.getenv("MAX_DOWNLOAD_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        download_timeout_seconds=float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "30")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )


@dataclass(frozen=True)
class RecordingConfig:
    tools: list[ToolConfig]
    thresholds: list[Threshold]
    threshold_mode: ThresholdMode


def load_recording_config(path: Path) -> RecordingConfig:
    """Read the tools/thresholds section of a recording from a JSON file.

    Expected shape::

        {
          "tools": [{"format": "junit", "pattern": "reports/*.xml", "skip_if_no_files": true}],
          "thresholds": [{"kind": "failed", "failure": 0}],
          "threshold_mode": "number"
        }
    """
    if not path.exists():
        raise ConfigurationError(f"recording config not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as infile:
            payload = json.load(infile)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"recording config is not valid JSON: {exc}") from exc

    raw_tools = payload.get("tools")
    if not isinstance(raw_tools, list):
        raise ConfigurationError("The tools section is required.")

    tools: list[ToolConfig] = []
    for index, raw in enumerate(raw_tools):
        if not isinstance(raw, dict) or not raw.get("format"):
            raise ConfigurationError(f"tool #{index} must declare a format")
        tools.append(
            ToolConfig(
                format=str(raw["format"]).strip().lower(),
                pattern=str(raw.get("pattern", "")),
                stylesheet=raw.get("stylesheet"),
                skip_if_no_files=bool(raw.get("skip_if_no_files", False)),
                fail_if_not_new=bool(raw.get("fail_if_not_new", True)),
                delete_output_files=bool(raw.get("delete_output_files", True)),
                stop_on_error=bool(raw.get("stop_on_error", True)),
            )
        )

    thresholds = [build_threshold(raw) for raw in payload.get("thresholds") or []]

    mode_raw = str(payload.get("threshold_mode", ThresholdMode.NUMBER.value)).lower()
    try:
        mode = ThresholdMode(mode_raw)
    except ValueError as exc:
        raise ConfigurationError(f"unknown threshold mode: {mode_raw}") from exc

    return RecordingConfig(tools=tools, thresholds=thresholds, threshold_mode=mode)
