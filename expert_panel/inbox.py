"""Inbox folder scanning, frontmatter parsing, and archive logic.

Each markdown file in the inbox is one request: the body is the prompt and
optional YAML front matter carries the request options::

    ---
    mode: auto
    event: file-save
    capabilities: [code_generation, testing]
    threshold: 0.8
    strategy: quality_focused
    hybrid: true
    ---
    Should the payment client retry on 503?
"""

import shutil
from datetime import datetime
from pathlib import Path

import frontmatter

from expert_panel.engine import request_from_mapping
from expert_panel.models import Request


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md files in inbox_dir, sorted by mtime ascending (oldest first)."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def parse_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata) where content is the body text and metadata
        is the front matter dict. If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    metadata = dict(post.metadata)
    return content, metadata


def request_from_file(file_path: Path) -> tuple[Request, str | None]:
    """Build a Request from an inbox file.

    Returns:
        (request, event) where event is the front matter event kind used to
        resolve "auto" mode, or None.

    Raises:
        InvalidRequest: If a front matter field has the wrong type.
    """
    content, meta = parse_file(file_path)
    data: dict = {
        "id": str(meta.get("id", file_path.stem)),
        "prompt": content,
        "requestedMode": meta.get("mode", "auto"),
        "requiredCapabilities": meta.get("capabilities") or [],
        "consensusThreshold": meta.get("threshold", 0.7),
        "weightingStrategy": meta.get("strategy"),
        "resolution": "hybrid" if meta.get("hybrid") else meta.get("resolution", "weighted"),
        "sessionContext": meta.get("session") or {},
    }
    event = meta.get("event")
    return request_from_mapping(data), str(event) if event else None


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest_name = f"{prefix}{timestamp}_{file_path.name}"
    dest = archive_dir / dest_name
    shutil.move(str(file_path), str(dest))
    return dest
