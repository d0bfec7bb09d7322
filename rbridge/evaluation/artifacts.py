"""Durable storage for evaluation artifacts (plots and widgets).

The evaluator reads artifact files from its scratch directory and hands
their contents to an ``ArtifactStore``. The store decides where the bytes
live and returns the reference string callers should use from then on.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

IMAGE_CATEGORY = "plots"
WIDGET_CATEGORY = "widgets"


class ArtifactStore(ABC):
    """Storage backend for plots and widgets."""

    @abstractmethod
    def store_image(self, name: str, data: bytes) -> str:
        """Persist image bytes and return a storage-relative reference."""

    @abstractmethod
    def store_widget(self, name: str, text: str) -> str:
        """Persist a widget document and return a storage-relative reference."""

    @abstractmethod
    def absolute_path(self, reference: str) -> Path:
        """Resolve a reference returned by this store to a filesystem path."""

    def file_url(self, reference: str) -> str:
        return self.absolute_path(reference).as_uri()


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts under ``<root>/plots`` and ``<root>/widgets``.

    Existing files with the same name are overwritten.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser().resolve()

    def _target(self, category: str, name: str) -> Path:
        folder = self.root / category
        folder.mkdir(parents=True, exist_ok=True)
        return folder / Path(name).name

    def store_image(self, name: str, data: bytes) -> str:
        target = self._target(IMAGE_CATEGORY, name)
        target.write_bytes(data)
        logger.debug(f"Stored plot {target}")
        return f"{IMAGE_CATEGORY}/{target.name}"

    def store_widget(self, name: str, text: str) -> str:
        target = self._target(WIDGET_CATEGORY, name)
        target.write_text(text, encoding="utf-8")
        logger.debug(f"Stored widget {target}")
        return f"{WIDGET_CATEGORY}/{target.name}"

    def absolute_path(self, reference: str) -> Path:
        return self.root / reference
