"""
Level Import Service - Local Asset Storage

Stores uploaded and derived files under ``UPLOAD_DIR/<owner>/`` and records
them in the ``assets`` table.  The import pipeline only needs two things
from storage: the absolute path of an asset on disk, and a public URL to put
in the chart.
"""

from __future__ import annotations

import mimetypes
import shutil
import uuid
from pathlib import Path
from typing import Any

from loguru import logger

from level_import.config import PUBLIC_URL_PREFIX, UPLOAD_DIR
from level_import.database import insert_asset_sync
from level_import.models import AssetKind
from level_import.utils import sanitize_filename


class LocalAssetStorage:
    """Filesystem-backed asset store."""

    provider = "local"

    def __init__(self, root: Path | None = None, public_prefix: str | None = None):
        self.root = Path(root or UPLOAD_DIR)
        self.public_prefix = (public_prefix or PUBLIC_URL_PREFIX).rstrip("/")

    def resolve_absolute_path(self, storage_path: str) -> Path:
        """Resolve a stored relative path, refusing paths that escape the root."""
        root = self.root.resolve()
        candidate = (root / storage_path).resolve()
        if root != candidate and root not in candidate.parents:
            raise ValueError(f"Storage path escapes the upload root: {storage_path}")
        return candidate

    def public_url(self, storage_path: str) -> str:
        return f"{self.public_prefix}/{storage_path}"

    def stage_file(
        self,
        owner_id: str,
        source: Path,
        kind: AssetKind,
        original_filename: str | None = None,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        storage_name: str | None = None,
    ) -> dict[str, Any]:
        """
        Copy *source* into the owner's upload folder without registering it.

        With *storage_name* the file lands at ``<owner>/<storage_name>`` and a
        second copy overwrites the first; otherwise a random suffix keeps the
        name unique.  Returns the unsaved asset record.
        """
        source = Path(source)
        original_filename = original_filename or source.name
        owner_dir = sanitize_filename(owner_id)
        if storage_name:
            storage_path = f"{owner_dir}/{sanitize_filename(storage_name)}"
        else:
            stem = sanitize_filename(Path(original_filename).stem)
            ext = Path(original_filename).suffix.lower()
            storage_path = f"{owner_dir}/{stem}_{uuid.uuid4().hex}{ext}"

        dest = self.root / storage_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)

        return {
            "id": None,
            "owner_id": owner_id,
            "kind": kind.value,
            "storage_provider": self.provider,
            "storage_path": storage_path,
            "public_url": self.public_url(storage_path),
            "mime_type": mime_type or mimetypes.guess_type(original_filename)[0] or "",
            "size_bytes": dest.stat().st_size,
            "original_filename": original_filename,
            "metadata": metadata or {},
        }

    def discard(self, storage_path: str) -> None:
        """Delete a stored file; a missing file is ignored."""
        self.resolve_absolute_path(storage_path).unlink(missing_ok=True)
        logger.debug("🗑️ Discarded stored file {}", storage_path)

    def store_file(
        self,
        owner_id: str,
        source: Path,
        kind: AssetKind,
        original_filename: str | None = None,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Copy *source* into the owner's upload folder and register the asset.

        Returns the asset record as stored.
        """
        asset = self.stage_file(
            owner_id,
            source,
            kind,
            original_filename=original_filename,
            mime_type=mime_type,
            metadata=metadata,
        )
        asset["id"] = insert_asset_sync(
            owner_id=owner_id,
            kind=asset["kind"],
            storage_path=asset["storage_path"],
            public_url=asset["public_url"],
            mime_type=asset["mime_type"],
            size_bytes=asset["size_bytes"],
            original_filename=asset["original_filename"],
            metadata=metadata,
            storage_provider=self.provider,
        )
        logger.debug(
            "💾 Stored {} ({} bytes) at {}",
            asset["original_filename"],
            asset["size_bytes"],
            asset["storage_path"],
        )
        return asset
