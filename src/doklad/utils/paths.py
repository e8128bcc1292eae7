from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "Doklad"


def default_data_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = os.environ.get("DOKLAD_DATA_DIR") or os.environ.get("XDG_DATA_HOME") or os.environ.get("LOCALAPPDATA")
    if base:
        return Path(base) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


@dataclass(frozen=True)
class AppPaths:
    data_dir: Path
    db_path: Path
    log_dir: Path
    maildrop_dir: Path
    email_archive_dir: Path


def ensure_dirs(*paths: Path) -> None:
    for p in paths:
        p.mkdir(parents=True, exist_ok=True)


def resolve_app_paths(
    data_dir: str | None,
    db_path: str | None,
    log_dir: str | None,
    maildrop_dir: str | None = None,
) -> AppPaths:
    dd = Path(data_dir) if data_dir else default_data_dir()
    db = Path(db_path) if db_path else dd / "doklad.sqlite"
    ld = Path(log_dir) if log_dir else dd / "LOG"
    md = Path(maildrop_dir) if maildrop_dir else dd / "maildrop"
    archive = dd / "payment-emails"
    ensure_dirs(dd, ld, md, archive)
    return AppPaths(data_dir=dd, db_path=db, log_dir=ld, maildrop_dir=md, email_archive_dir=archive)
