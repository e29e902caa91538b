"""ouvidoria_etl.source

Source snapshot readers.  Both return the full list of rows (header → cell)
or raise SourceFetchError; nothing is written to the store until the whole
input has been read.
"""

from __future__ import annotations

import csv
import io
import logging
from pathlib import Path
from typing import Any

import requests

from ouvidoria_etl.shared import SourceFetchError, normalize_headers

log = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 60


def parse_csv_text(text: str) -> list[dict[str, Any]]:
    """Parse CSV text into header-normalized row dicts."""
    if text.startswith("\ufeff"):
        text = text[1:]
    try:
        reader = csv.DictReader(io.StringIO(text))
        return [normalize_headers(row) for row in reader]
    except csv.Error as exc:
        raise SourceFetchError(f"could not parse CSV: {exc}") from exc


def read_csv_rows(path: Path) -> list[dict[str, Any]]:
    try:
        text = Path(path).read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceFetchError(f"could not read {path}: {exc}") from exc
    rows = parse_csv_text(text)
    log.info("read %d rows from %s", len(rows), path)
    return rows


def fetch_sheet_rows(
    url: str,
    timeout: int = DEFAULT_FETCH_TIMEOUT,
    session: requests.Session | None = None,
) -> list[dict[str, Any]]:
    """Download a spreadsheet CSV export and parse it.

    Raises:
        SourceFetchError: On network failure, timeout, non-2xx status or
            unparseable content.
    """
    http = session or requests.Session()
    try:
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise SourceFetchError(f"could not fetch sheet: {exc}") from exc
    # sheet exports are UTF-8 but often sent without a charset
    try:
        text = resp.content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SourceFetchError(f"sheet export is not UTF-8: {exc}") from exc
    rows = parse_csv_text(text)
    log.info("fetched %d rows from sheet export", len(rows))
    return rows
