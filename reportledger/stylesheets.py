from pathlib import Path
from urllib.parse import urlparse

import httpx

from reportledger.config import Settings
from reportledger.errors import StylesheetNotFoundError
from reportledger.patterns import expand_macros
from reportledger.remote import Channel
from reportledger.retry import RetryExhaustedError, run_with_retries
from reportledger.schemas import RunContext, ToolConfig


def is_url(location: str) -> bool:
    parsed = urlparse(location)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def download(url: str, settings: Settings) -> str:
    def fetch() -> str:
        response = httpx.get(url, timeout=settings.download_timeout_seconds, follow_redirects=True)
        response.raise_for_status()
        return response.text

    try:
        return run_with_retries(
            fetch,
            max_retries=settings.max_download_retries,
            backoff_seconds=settings.retry_backoff_seconds,
            should_retry=lambda exc: isinstance(exc, httpx.TransportError),
        )
    except RetryExhaustedError as exc:
        raise StylesheetNotFoundError(f"unable to download the stylesheet '{url}': {exc}") from exc


def _read_local(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StylesheetNotFoundError(f"unable to read the stylesheet '{path}': {exc}") from exc


def resolve_custom_stylesheet(tool: ToolConfig, context: RunContext, channel: Channel, settings: Settings) -> str:
    # URL, then coordinator path, then node path, then workspace-relative path.
    if not tool.stylesheet:
        raise StylesheetNotFoundError(f"the '{tool.format}' tool requires a stylesheet")

    location = expand_macros(tool.stylesheet, context.environment)

    if is_url(location):
        return download(location, settings)

    local = Path(location)
    if local.is_absolute() and local.is_file():
        return _read_local(local)

    for relative in (False, True):
        content = channel.call("read_file", {"path": location, "relative": relative}, context.log)
        if content is not None:
            return content

    raise StylesheetNotFoundError(f"The stylesheet '{location}' does not exist.")


def user_stylesheet(tool: ToolConfig, context: RunContext, settings: Settings) -> str | None:
    if not settings.user_content_dir:
        return None
    candidate = Path(settings.user_content_dir) / tool.format / f"{tool.format}.xsl"
    if not candidate.is_file():
        return None
    context.log.info(f"Using the custom user stylesheet '{candidate}'.")
    return _read_local(candidate)
