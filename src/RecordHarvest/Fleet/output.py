# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.output",
#   "purpose": "Output folder layout, idempotence checks, and completion manifests",
#   "sections": [
#     {"id": "clean-name", "name": "clean_name", "anchor": "function-clean-name", "kind": "function"},
#     {"id": "artifactlayout", "name": "ArtifactLayout", "anchor": "class-artifactlayout", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Output namespace for harvested artifacts.

Layout::

    <root>/
      <item_id>_<Record_Label>/
        <Sub_Label>__<sub_id>.pdf
        manifest.json          ← written last; marks the record complete

Responsibilities
----------------
- Answer the per-sub-item idempotence question ("is this artifact already on
  disk?") by sub-item id, independent of the label it was saved under.
- Write the completion manifest whose path becomes a record's ``output_ref``.
- Seed the completed set at fleet start from folders carrying a manifest, so
  a full process restart does not redo finished records.
- Remove stale ``*.part`` files left behind by interrupted downloads.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .locks import artifact_lock
from .models import CompletedEntry, SubItem

__all__ = ["ArtifactLayout", "clean_name", "MANIFEST_NAME", "PART_SUFFIX"]

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
PART_SUFFIX = ".part"

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


def clean_name(text: str) -> str:
    """Collapse every run of non-alphanumerics into one ``_`` and trim the ends.

    >>> clean_name("Progress Note - 03/14/2024")
    'Progress_Note_03_14_2024'
    """
    return _UNSAFE.sub("_", text or "").strip("_")


class ArtifactLayout:
    """Filesystem layout of harvested records under ``root``."""

    def __init__(self, root: Path, *, suffix: str = ".pdf") -> None:
        self.root = Path(root)
        self.suffix = suffix if suffix.startswith(".") else f".{suffix}"

    # ── Naming ──────────────────────────────────────────────────────────────

    def record_dir(self, item_id: int, label: str = "") -> Path:
        cleaned = clean_name(label)
        name = f"{item_id}_{cleaned}" if cleaned else str(item_id)
        return self.root / name

    def artifact_name(self, sub_item: SubItem) -> str:
        stem = clean_name(sub_item.label) or "artifact"
        return f"{stem}__{clean_name(sub_item.sub_id)}{self.suffix}"

    def artifact_path(self, item_id: int, label: str, sub_item: SubItem) -> Path:
        return self.record_dir(item_id, label) / self.artifact_name(sub_item)

    def _record_dirs(self, item_id: int) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        prefix = f"{item_id}_"
        for entry in self.root.iterdir():
            if entry.is_dir() and (entry.name == str(item_id) or entry.name.startswith(prefix)):
                yield entry

    # ── Idempotence ─────────────────────────────────────────────────────────

    def find_artifact(self, item_id: int, sub_id: str) -> Optional[Path]:
        """Return the stored artifact for ``sub_id`` under any folder of ``item_id``."""
        pattern = f"*__{clean_name(sub_id)}{self.suffix}"
        for folder in self._record_dirs(item_id):
            for candidate in folder.glob(pattern):
                if candidate.is_file() and candidate.stat().st_size > 0:
                    return candidate
        return None

    def artifact_exists(self, item_id: int, sub_id: str) -> bool:
        return self.find_artifact(item_id, sub_id) is not None

    def count_artifacts(self, item_id: int) -> int:
        return sum(
            1
            for folder in self._record_dirs(item_id)
            for candidate in folder.glob(f"*{self.suffix}")
            if candidate.is_file()
        )

    # ── Completion ──────────────────────────────────────────────────────────

    def write_manifest(
        self,
        item_id: int,
        label: str,
        sub_items: Sequence[SubItem],
        *,
        worker_id: Optional[str] = None,
    ) -> str:
        """Write the record manifest atomically and return its path as the output_ref."""
        folder = self.record_dir(item_id, label)
        folder.mkdir(parents=True, exist_ok=True)
        artifacts: List[Dict[str, Optional[str]]] = []
        for sub_item in sub_items:
            found = self.find_artifact(item_id, sub_item.sub_id)
            artifacts.append(
                {
                    "sub_id": sub_item.sub_id,
                    "label": sub_item.label,
                    "file": found.name if found else None,
                }
            )
        payload = {
            "item_id": item_id,
            "label": label,
            "artifacts": artifacts,
            "worker_id": worker_id,
            "completed_at": time.time(),
        }
        manifest = folder / MANIFEST_NAME
        tmp = manifest.with_name(manifest.name + PART_SUFFIX)
        with artifact_lock(manifest):
            tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, manifest)
        logger.info(f"Record {item_id}: manifest written ({len(artifacts)} artifacts)")
        return str(manifest)

    def scan_completed(self) -> Dict[int, CompletedEntry]:
        """Return completed records found on disk, keyed by item id."""
        completed: Dict[int, CompletedEntry] = {}
        if not self.root.is_dir():
            return completed
        for manifest in self.root.glob(f"*/{MANIFEST_NAME}"):
            head = manifest.parent.name.split("_", 1)[0]
            if not head.isdigit():
                continue
            try:
                payload = json.loads(manifest.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning(f"Ignoring unreadable manifest {manifest}: {exc}")
                continue
            completed[int(head)] = CompletedEntry(
                output_ref=str(manifest),
                completed_at=float(payload.get("completed_at") or manifest.stat().st_mtime),
                holder=payload.get("worker_id"),
            )
        logger.info(f"Found {len(completed)} completed records under {self.root}")
        return completed

    def cleanup_partials(self, max_age_s: float = 3600.0) -> int:
        """Delete ``*.part`` files older than ``max_age_s``; return how many were removed."""
        if not self.root.is_dir():
            return 0
        cutoff = time.time() - max_age_s
        removed = 0
        for part in self.root.rglob(f"*{PART_SUFFIX}"):
            try:
                if part.stat().st_mtime < cutoff:
                    part.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info(f"Removed {removed} stale partial files under {self.root}")
        return removed
