"""File helpers shared by the feedback store, exporter and ontology snapshot."""

from __future__ import annotations

from pathlib import Path


def atomic_write_text(path: Path, text: str) -> Path:
    """Write *text* to *path* via a temporary file and a rename.

    The destination is never left half-written if the process dies
    mid-write. Parent directories are created as needed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return path
