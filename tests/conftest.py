from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from reportledger.config import Settings
from reportledger.database import build_session_factory
from reportledger.pipeline import PipelineRunner


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True, exist_ok=True)
    return workspace


@pytest.fixture()
def test_settings(tmp_path: Path, temp_workspace: Path) -> Settings:
    return Settings(
        app_name="reportledger",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        workspace_dir=str(temp_workspace),
        generated_dir="generatedJUnitFiles",
        user_content_dir="",
        test_time_margin_ms=3000,
        max_download_retries=0,
        retry_backoff_seconds=0,
        download_timeout_seconds=5,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def runner(test_settings: Settings, session_factory: sessionmaker[Session]) -> Generator[PipelineRunner, None, None]:
    yield PipelineRunner(test_settings, session_factory)
