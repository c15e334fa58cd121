"""Turn an uploaded spreadsheet into an ordered list of row dicts.

Only the first sheet is read.  CSV cells are kept as text so that long
numeric identifiers keep their leading zeros; Excel cells keep the Python
type openpyxl gives them (``datetime`` for date cells, ``int``/``float`` for
numbers) and the row validator normalizes from there.
"""

from __future__ import annotations

import io
from pathlib import PurePath
from typing import Any, Final

import pandas as pd
import structlog

from kycflow.services.errors import FileRejectedError, FileTooLargeError

logger = structlog.get_logger(__name__)

ALLOWED_EXTENSIONS: Final[frozenset[str]] = frozenset({".xlsx", ".xls", ".csv"})
DEFAULT_MAX_BYTES: Final[int] = 10 * 1024 * 1024


def check_upload(filename: str, size_bytes: int, max_bytes: int = DEFAULT_MAX_BYTES) -> str:
    """Validate the file boundary and return the lower-cased extension."""
    extension = PurePath(filename or "").suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise FileRejectedError(
            "invalid file type: only Excel (.xlsx, .xls) and CSV files are allowed"
        )
    if size_bytes > max_bytes:
        raise FileTooLargeError(
            f"file too large: limit is {max_bytes // (1024 * 1024)} MiB"
        )
    return extension


def _read_frame(content: bytes, extension: str) -> pd.DataFrame:
    buffer = io.BytesIO(content)
    if extension == ".csv":
        return pd.read_csv(buffer, dtype=str, keep_default_na=False)
    try:
        return pd.read_excel(buffer, engine="openpyxl", dtype=object)
    except Exception:
        # Legacy .xls needs pandas' default engine.
        buffer.seek(0)
        return pd.read_excel(buffer, dtype=object)


def read_sheet(
    content: bytes,
    filename: str,
    *,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> list[dict[str, Any]]:
    """Parse *content* into one dict per data row, keyed by stripped header."""
    extension = check_upload(filename, len(content), max_bytes)

    try:
        frame = _read_frame(content, extension)
    except pd.errors.EmptyDataError as exc:
        raise FileRejectedError("no data found in the file") from exc
    except Exception as exc:
        logger.warning("sheet.read_failed", filename=filename, error=str(exc))
        raise FileRejectedError("could not read file") from exc

    frame.columns = [str(column).strip() for column in frame.columns]
    rows = frame.to_dict("records")

    for row in rows:
        for key, value in row.items():
            if not isinstance(value, str) and pd.isna(value):
                row[key] = None

    if not rows:
        raise FileRejectedError("no data found in the file")

    logger.info(
        "sheet.read",
        filename=filename,
        rows=len(rows),
        columns=list(frame.columns),
    )
    return rows
