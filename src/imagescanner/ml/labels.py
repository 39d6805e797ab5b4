"""Label table: ordered class names indexed by model output position."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)


def parse_labels(text: str) -> tuple[str, ...]:
    """Split newline-delimited class names, dropping blank lines.

    Line order is significant: the n-th non-blank line names class n.
    """
    return tuple(line for line in text.splitlines() if line.strip())


class LabelTable:
    """Loads the label list once from a URL or a local file and caches it."""

    def __init__(self, url: str, path: str | None = None, timeout: float = 30.0) -> None:
        self._url = url
        self._path = Path(path) if path else None
        self._timeout = timeout
        self._lock = threading.Lock()
        self._labels: tuple[str, ...] | None = None

    @property
    def loaded(self) -> bool:
        return self._labels is not None

    def get(self) -> tuple[str, ...]:
        """Return the label tuple, fetching it on first use.

        Raises:
            httpx.HTTPError: If the remote fetch fails.
            OSError: If the local file cannot be read.
            ValueError: If the source contains no labels.
        """
        with self._lock:
            if self._labels is None:
                labels = parse_labels(self._read())
                if not labels:
                    raise ValueError(f"Label source {self._source} is empty")
                self._labels = labels
                logger.info("Loaded %d labels from %s", len(labels), self._source)
            return self._labels

    @property
    def _source(self) -> str:
        return str(self._path) if self._path is not None else self._url

    def _read(self) -> str:
        if self._path is not None:
            return self._path.read_text(encoding="utf-8")
        response = httpx.get(self._url, timeout=self._timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text
