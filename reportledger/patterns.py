from collections.abc import Mapping
from pathlib import Path, PurePosixPath
import re


_MACRO = re.compile(r"\$([A-Za-z0-9_]+|\{[A-Za-z0-9_.]+\})")
_LINE_BREAKS = re.compile(r"[\t\r\n]+")
_SEPARATORS = re.compile(r"[,\s]+")


def expand_macros(text: str, environment: Mapping[str, str]) -> str:
    # Unknown variables are left as written.
    def replace(match: re.Match[str]) -> str:
        key = match.group(1).strip("{}")
        value = environment.get(key)
        return match.group(0) if value is None else value

    return _MACRO.sub(replace, text)


def resolve_pattern(raw_pattern: str, environment: Mapping[str, str]) -> str:
    return expand_macros(_LINE_BREAKS.sub(" ", raw_pattern), environment)


def is_empty_pattern(pattern: str | None) -> bool:
    return pattern is None or not pattern.strip()


def _relative_include(root: Path, include: str) -> str | None:
    if not PurePosixPath(include).is_absolute():
        return include[2:] if include.startswith("./") else include
    for base in (root, root.resolve()):
        try:
            relative = PurePosixPath(include).relative_to(base.as_posix()).as_posix()
        except ValueError:
            continue
        return relative + "/" if include.endswith("/") else relative
    # Includes outside the root never match.
    return None


def find_files(root: Path, pattern: str) -> list[Path]:
    # Ant-style includes separated by commas or whitespace, relative to root.
    found: set[Path] = set()
    for include in _SEPARATORS.split(pattern.strip()):
        if not include:
            continue
        include = _relative_include(root, include.replace("\\", "/"))
        if not include or include in (".", "./"):
            continue
        # "dir/" means everything below dir, as in Ant.
        if include.endswith("/"):
            include += "**/*"
        for path in root.glob(include):
            if path.is_file():
                found.add(path)
    return sorted(found)
