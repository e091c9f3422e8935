"""
Zip packaging of compressed PDFs.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Sequence

from .compression import CompressionOutcome
from .errors import ArchiveFailure, CompressionFailure
from .utils import safe_entry_name, unique_names
from .workspace import TempWorkspace

logger = logging.getLogger(__name__)


class ArchivePackager:
    """Bundles successful compression outcomes into one zip inside a workspace."""

    def __init__(self, compresslevel: int = 9) -> None:
        self.compresslevel = compresslevel

    def package(self, outcomes: Sequence[CompressionOutcome], workspace: TempWorkspace, archive_name: str) -> Path:
        """
        Write a zip of every succeeded outcome, in the given order.

        Entry names are the documents' original file names; duplicates get a
        numeric suffix.

        Raises:
            CompressionFailure: no outcome succeeded (nothing is written)
            ArchiveFailure: the archive could not be written
        """
        successful = [outcome for outcome in outcomes if outcome.result.succeeded]
        if not successful:
            raise CompressionFailure("Failed to compress any documents")

        entry_names = unique_names(
            self._entry_name(outcome.result.original_name) for outcome in successful
        )
        archive_path = workspace.file_path(archive_name)

        logger.info(f"Creating zip archive: {archive_path} with {len(successful)} entries")
        try:
            with zipfile.ZipFile(
                archive_path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compresslevel,
            ) as archive:
                for entry_name, outcome in zip(entry_names, successful):
                    if outcome.path is not None:
                        archive.write(outcome.path, arcname=entry_name)
                    else:
                        archive.writestr(entry_name, outcome.data)
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            logger.error(f"Archive creation failed: {exc}")
            raise ArchiveFailure(f"Error creating archive: {exc}") from exc

        logger.info(f"Zip archive created: {archive_path}")
        return archive_path

    def _entry_name(self, original_name: str) -> str:
        name = safe_entry_name(original_name)
        if not name.lower().endswith(".pdf"):
            name = f"{name}.pdf"
        return name
