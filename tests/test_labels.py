"""Tests for label table parsing and loading."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from imagescanner.ml.labels import LabelTable, parse_labels

LABELS_URL = "https://example.test/labels.txt"


def _response(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, text=text, request=httpx.Request("GET", LABELS_URL))


class TestParseLabels:
    def test_keeps_order(self) -> None:
        assert parse_labels("cat\ndog\nbird\n") == ("cat", "dog", "bird")

    def test_drops_blank_lines(self) -> None:
        assert parse_labels("background\n\ntench\n\n\ngoldfish") == ("background", "tench", "goldfish")

    def test_handles_crlf(self) -> None:
        assert parse_labels("cat\r\ndog\r\n") == ("cat", "dog")

    def test_keeps_commas_inside_labels(self) -> None:
        assert parse_labels("Siamese cat, Siamese\n") == ("Siamese cat, Siamese",)

    def test_empty_text(self) -> None:
        assert parse_labels("") == ()


class TestLabelTable:
    def test_reads_local_file(self, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("cat\ndog\n", encoding="utf-8")

        table = LabelTable(LABELS_URL, path=str(labels_file))

        assert table.get() == ("cat", "dog")
        assert table.loaded

    @patch("imagescanner.ml.labels.httpx.get")
    def test_fetches_once(self, mock_get: MagicMock) -> None:
        mock_get.return_value = _response("cat\ndog\n")
        table = LabelTable(LABELS_URL, timeout=3.0)

        assert table.get() == ("cat", "dog")
        assert table.get() == ("cat", "dog")

        mock_get.assert_called_once_with(LABELS_URL, timeout=3.0, follow_redirects=True)

    @patch("imagescanner.ml.labels.httpx.get")
    def test_http_error_is_not_cached(self, mock_get: MagicMock) -> None:
        mock_get.side_effect = [_response("gone", status_code=404), _response("cat\n")]
        table = LabelTable(LABELS_URL)

        with pytest.raises(httpx.HTTPStatusError):
            table.get()
        assert not table.loaded

        assert table.get() == ("cat",)
        assert mock_get.call_count == 2

    @patch("imagescanner.ml.labels.httpx.get")
    def test_empty_source_raises(self, mock_get: MagicMock) -> None:
        mock_get.return_value = _response("\n\n")
        table = LabelTable(LABELS_URL)

        with pytest.raises(ValueError, match="empty"):
            table.get()
