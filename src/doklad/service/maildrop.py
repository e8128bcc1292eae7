from __future__ import annotations

import logging
import os
import platform
import shutil
import sys
import time
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from doklad.utils.logging_setup import log_event

from .webhook import BankEmailIntake, EmailAttachment, recipient_addresses

log = logging.getLogger(__name__)

SUPPORTED_EXT = {".eml"}
PROCESSED_DIR = "processed"
FAILED_DIR = "failed"


def is_supported(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_EXT


def safe_move(src: Path, dst_dir: Path, target_name: str | None = None) -> Path:
    """Přesune soubor do složky; kolizi jmen řeší příponou _1, _2, ..."""
    name = Path(str(target_name or src.name).replace("\\", "/")).name.strip() or src.name
    dst_dir.mkdir(parents=True, exist_ok=True)
    dst = dst_dir / name
    if dst.exists():
        i = 1
        while True:
            cand = dst_dir / f"{dst.stem}_{i}{dst.suffix}"
            if not cand.exists():
                dst = cand
                break
            i += 1
    for attempt in range(3):
        try:
            shutil.move(str(src), str(dst))
            return dst
        except PermissionError:
            # Windows: soubor ještě drží zapisující proces
            if attempt == 2:
                raise
            time.sleep(0.05)
    return dst


@dataclass
class ParsedEmail:
    to_addresses: List[str]
    from_address: Optional[str]
    subject: Optional[str]
    text: str
    attachments: List[EmailAttachment] = field(default_factory=list)


def parse_eml(data: bytes) -> ParsedEmail:
    msg: EmailMessage = BytesParser(policy=policy.default).parsebytes(data)  # type: ignore[assignment]
    body = msg.get_body(preferencelist=("plain", "html"))
    text = body.get_content() if body is not None else ""
    attachments: List[EmailAttachment] = []
    for part in msg.iter_attachments():
        ctype = part.get_content_type()
        if not (ctype.startswith("text/") or "csv" in ctype):
            continue
        try:
            content = part.get_content()
        except (LookupError, ValueError):
            continue
        if isinstance(content, bytes):
            content = content.decode(part.get_content_charset() or "utf-8", errors="replace")
        attachments.append(EmailAttachment(part.get_filename() or "attachment", str(content), ctype))
    return ParsedEmail(
        to_addresses=recipient_addresses([str(h) for h in (msg.get_all("To") or []) + (msg.get_all("Cc") or [])]),
        from_address=str(msg.get("From") or "").strip() or None,
        subject=str(msg.get("Subject") or "").strip() or None,
        text=str(text),
        attachments=attachments,
    )


class MaildropProcessor:
    """Zpracuje .eml soubor z mail-drop složky a přesune ho do processed/ nebo failed/."""

    def __init__(self, directory: Path, intake: BankEmailIntake):
        self.directory = Path(directory)
        self.intake = intake

    def process_file(self, path: Path) -> Dict[str, Any]:
        try:
            parsed = parse_eml(path.read_bytes())
            result = self.intake.handle_bank_email(
                parsed.to_addresses, parsed.from_address, parsed.subject, parsed.text, parsed.attachments
            )
        except Exception as exc:
            log.exception("Zpracování %s selhalo", path.name)
            safe_move(path, self.directory / FAILED_DIR)
            return {"processed": 0, "matched": 0, "errors": [str(exc)]}
        failed = result.get("processed", 0) == 0 and bool(result.get("errors"))
        moved = safe_move(path, self.directory / (FAILED_DIR if failed else PROCESSED_DIR))
        log_event(
            log,
            "maildrop.file",
            "Maildrop file processed",
            file=path.name,
            moved_to=moved.parent.name,
            processed=result.get("processed"),
            matched=result.get("matched"),
        )
        return result

    def process_pending(self) -> int:
        n = 0
        for p in scan_directory(self.directory):
            self.process_file(p)
            n += 1
        return n


class _Handler(FileSystemEventHandler):
    def __init__(self, on_file: Callable[[Path], None]):
        self.on_file = on_file

    def on_created(self, event):
        if event.is_directory:
            return
        p = Path(event.src_path)
        if is_supported(p):
            self.on_file(p)


class DirectoryWatcher:
    def __init__(self, directory: Path, on_file: Callable[[Path], None]):
        self.directory = directory
        self.on_file = on_file
        # Python 3.13 na Windows koliduje s atributem `_handle` nativního emitteru
        if platform.system() == "Windows" and sys.version_info >= (3, 13):
            self._observer = PollingObserver()
        else:
            self._observer = Observer()

    def start(self):
        self.directory.mkdir(parents=True, exist_ok=True)
        handler = _Handler(self.on_file)
        try:
            self._observer.schedule(handler, str(self.directory), recursive=False)
            self._observer.start()
        except TypeError as exc:
            log.warning("watchdog native observer failed (%s), falling back to polling", exc)
            self._observer = PollingObserver()
            self._observer.schedule(handler, str(self.directory), recursive=False)
            self._observer.start()

    def stop(self):
        self._observer.stop()
        self._observer.join(timeout=5)


def scan_directory(directory: Path) -> Iterable[Path]:
    if not directory.exists():
        return []
    return sorted(
        directory / name
        for name in os.listdir(directory)
        if (directory / name).is_file() and is_supported(directory / name)
    )
