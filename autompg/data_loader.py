#!/usr/bin/env python3
"""
Auto-MPG table reader.

Reads the whitespace-delimited, header-less auto-mpg table either from a remote
URL (fetched once with requests) or from a local file, and returns it as a
DataFrame with the fixed column names assigned.
"""

import io
import logging
import time
from pathlib import Path
from typing import Optional, Union

import pandas as pd
import requests

from .utils import is_remote_source

logger = logging.getLogger(__name__)

# Fixed column order of the source table (no header row).
COLUMN_NAMES: list[str] = [
    "mpg",
    "cylinders",
    "displacement",
    "horsepower",
    "weight",
    "acceleration",
    "model_year",
    "origin",
    "car_name",
]

DEFAULT_TIMEOUT_SECONDS: float = 30.0


class DataLoadError(Exception):
    """Base exception for data loading errors."""

    pass


class DataFetchError(DataLoadError):
    """Raised when the source cannot be fetched or read."""

    pass


class SchemaError(DataLoadError):
    """Raised when the table does not have the expected shape."""

    pass


class AutoMpgReader:
    """
    Reader for the auto-mpg table.

    The source may be an http(s) URL or a local path. Raw text is fetched once
    and cached on the instance so repeated parses do not refetch.
    """

    def __init__(
        self,
        source: Union[str, Path],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Args:
            source: URL or path of the table
            timeout: Network timeout in seconds (remote sources only)
            session: Optional requests session, owned and closed by the caller;
                requests.get is used when None
        """
        self.source = str(source)
        self.timeout = timeout
        self._session = session
        self._text: Optional[str] = None
        self.fetch_seconds: Optional[float] = None

    @property
    def is_remote(self) -> bool:
        return is_remote_source(self.source)

    def fetch_text(self) -> str:
        """
        Return the raw table text.

        Raises:
            DataFetchError: If the URL cannot be fetched or the file cannot be read
        """
        if self._text is not None:
            return self._text

        started = time.perf_counter()
        if self.is_remote:
            logger.info(f"Downloading from: {self.source}")
            getter = self._session.get if self._session is not None else requests.get
            try:
                response = getter(self.source, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                raise DataFetchError(f"Failed to fetch {self.source}: {e}") from e
            text = response.text
        else:
            path = Path(self.source)
            if not path.is_file():
                raise DataFetchError(f"Data file not found: {path}")
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise DataFetchError(f"Error reading data file {path}: {e}") from e

        self.fetch_seconds = time.perf_counter() - started
        logger.info(
            f"Loaded {len(text)} bytes from {self.source} in {self.fetch_seconds:.2f}s"
        )
        self._text = text
        return text

    def read_frame(self) -> pd.DataFrame:
        """
        Parse the table into a DataFrame with COLUMN_NAMES assigned.

        horsepower is kept as text so the missing-value marker survives to the cleaner.

        Raises:
            DataFetchError: If the source cannot be read
            SchemaError: If the table is empty or has the wrong number of columns
        """
        text = self.fetch_text()
        if not text.strip():
            raise SchemaError(f"No data found in {self.source}")

        try:
            df = pd.read_csv(
                io.StringIO(text),
                sep=r"\s+",
                header=None,
                quotechar='"',
                dtype={3: str, 8: str},
            )
        except pd.errors.ParserError as e:
            raise SchemaError(f"Malformed table in {self.source}: {e}") from e

        if df.shape[1] != len(COLUMN_NAMES):
            raise SchemaError(
                f"Expected {len(COLUMN_NAMES)} columns, found {df.shape[1]} in {self.source}"
            )
        df.columns = COLUMN_NAMES
        return df

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit. A session passed in by the caller stays open."""
        return None
