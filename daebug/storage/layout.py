"""Path helpers for the page log directory."""
from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional

from daebug.orchestrator.registry import sanitize_name

LOG_DIR = "daebug"
INDEX_FILE = "daebug.md"


class LogLayout:
    """Computes page log paths inside the server root."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.logs = root / LOG_DIR
        self.logs.mkdir(parents=True, exist_ok=True)

    @property
    def index(self) -> Path:
        return self.root / INDEX_FILE

    def page_file(self, page: str) -> Path:
        return self.logs / f"{sanitize_name(page) or 'page'}.md"

    def slug_for(self, path: Path) -> Optional[str]:
        """Return the page slug a log path belongs to, or None for other files."""
        path = Path(path)
        if path.suffix.lower() != ".md" or path.parent.resolve() != self.logs.resolve():
            return None
        return path.stem

    def page_files(self) -> Iterator[Path]:
        return iter(sorted(self.logs.glob("*.md")))
