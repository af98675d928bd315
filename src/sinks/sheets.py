"""
TCG Marketplace Monitor — Google Sheets Sink

Appends one row per listing to the review spreadsheet via the Sheets v4 API
(google-api-python-client, service-account credentials). The client library
is blocking, so every .execute() runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import httplib2
import structlog
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from src.config import settings
from src.pipeline.errors import PersistenceError
from src.sinks import PersistedListing
from src.utils.urls import clean_marketplace_url

logger = structlog.get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

HEADERS = [
    "Date Found",
    "Item Name",
    "Set",
    "Product Type",
    "Price",
    "Quantity",
    "Price Unit",
    "Language",
    "Condition",
    "Main Listing Price",
    "Location",
    "Has Multiple Items",
    "Confidence",
    "Needs Review",
    "Status",
    "Source",
    "Search Term",
    "eBay Median Price",
    "Marketplace URL",
    "Notes",
]

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _column_letter(index: int) -> str:
    """0-based column index -> A1 letter (0 -> A, 25 -> Z, 26 -> AA)."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


LAST_COLUMN = _column_letter(len(HEADERS) - 1)
URL_COLUMN = _column_letter(HEADERS.index("Marketplace URL"))


def to_row(record: PersistedListing) -> list[Any]:
    """Render a record in HEADERS order. Unparseable prices are written as INVALID."""
    return [
        record.date_found.strftime(DATE_FORMAT),
        record.item_name,
        record.set_name or "",
        record.product_type,
        f"{record.price:.2f}" if record.price is not None else "INVALID",
        record.quantity,
        record.price_unit or "",
        record.language,
        record.condition or "",
        f"{record.main_listing_price:.2f}" if record.main_listing_price is not None else "",
        record.location or "",
        "Yes" if record.has_multiple_items else "No",
        round(record.confidence, 2),
        "Yes" if record.needs_review else "No",
        record.status.value,
        record.source,
        record.search_term,
        f"{record.ebay_median_price:.2f}" if record.ebay_median_price is not None else "",
        record.marketplace_url,
        record.notes or "",
    ]


class GoogleSheetsSink:
    """
    ListingSink backed by a Google Sheets worksheet.

    The worksheet and its header row are created on first use.
    """

    def __init__(
        self,
        spreadsheet_id: str | None = None,
        sheet_name: str | None = None,
        credentials_path: str | None = None,
        service: Any | None = None,
        max_retries: int | None = None,
        base_backoff: float = 1.0,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id if spreadsheet_id is not None else settings.GOOGLE_SPREADSHEET_ID
        self._sheet_name = sheet_name or settings.GOOGLE_SHEET_NAME
        self._credentials_path = credentials_path or settings.GOOGLE_CREDENTIALS_PATH
        self._service = service
        self._max_retries = max_retries if max_retries is not None else settings.SHEETS_MAX_RETRIES
        self._base_backoff = base_backoff
        self._initialized = False

    def _get_service(self) -> Any:
        if self._service is None:
            try:
                credentials = service_account.Credentials.from_service_account_file(
                    self._credentials_path, scopes=SCOPES
                )
            except (OSError, ValueError, GoogleAuthError) as e:
                raise PersistenceError(f"cannot load Google credentials from {self._credentials_path}: {e}") from e
            try:
                self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
            except (httplib2.HttpLib2Error, GoogleAuthError, OSError) as e:
                raise PersistenceError(f"cannot build Sheets client: {e}") from e
        return self._service

    def _range(self, cells: str) -> str:
        return f"'{self._sheet_name}'!{cells}"

    async def _execute(self, make_request: Callable[[Any], Any], action: str) -> Any:
        """
        Build and execute a Sheets request off the event loop.

        Retries 429/5xx with exponential backoff.

        Raises:
            PersistenceError: non-retryable HTTP error, retries exhausted,
                or a transport failure.
        """
        if not self._spreadsheet_id:
            raise PersistenceError("GOOGLE_SPREADSHEET_ID is not configured")

        service = self._get_service()
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                return await asyncio.to_thread(make_request(service).execute)
            except HttpError as e:
                status = getattr(e.resp, "status", None)
                last_error = e
                if status in RETRYABLE_STATUS and attempt < self._max_retries:
                    wait_time = self._base_backoff * (2 ** attempt)
                    logger.warning(
                        "sheets_retryable_error",
                        action=action,
                        status_code=status,
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                        source="sheets",
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error("sheets_http_error", action=action, status_code=status, error=str(e), source="sheets")
                raise PersistenceError(f"Sheets {action} failed with status {status}") from e
            except (httplib2.HttpLib2Error, GoogleAuthError, OSError) as e:
                logger.error(
                    "sheets_transport_error", action=action, error=str(e), error_type=type(e).__name__, source="sheets"
                )
                raise PersistenceError(f"Sheets {action} failed: {e}") from e

        raise PersistenceError(f"Sheets {action} failed after {self._max_retries + 1} attempts") from last_error

    async def ensure_sheet(self) -> None:
        """Create the worksheet and header row if they are missing."""
        if self._initialized:
            return

        spreadsheet = await self._execute(
            lambda s: s.spreadsheets().get(spreadsheetId=self._spreadsheet_id, fields="sheets.properties.title"),
            "get_spreadsheet",
        )
        titles = {sheet["properties"]["title"] for sheet in spreadsheet.get("sheets", [])}
        if self._sheet_name not in titles:
            await self._execute(
                lambda s: s.spreadsheets().batchUpdate(
                    spreadsheetId=self._spreadsheet_id,
                    body={"requests": [{"addSheet": {"properties": {"title": self._sheet_name}}}]},
                ),
                "add_sheet",
            )
            logger.info("sheets_worksheet_created", sheet_name=self._sheet_name, source="sheets")

        header = await self._execute(
            lambda s: s.spreadsheets().values().get(
                spreadsheetId=self._spreadsheet_id, range=self._range(f"A1:{LAST_COLUMN}1")
            ),
            "read_header",
        )
        if not header.get("values"):
            await self._execute(
                lambda s: s.spreadsheets().values().update(
                    spreadsheetId=self._spreadsheet_id,
                    range=self._range(f"A1:{LAST_COLUMN}1"),
                    valueInputOption="RAW",
                    body={"values": [HEADERS]},
                ),
                "write_header",
            )
            logger.info("sheets_header_written", sheet_name=self._sheet_name, source="sheets")

        self._initialized = True

    async def append(self, record: PersistedListing) -> None:
        """
        Append one listing row.

        Raises:
            PersistenceError
        """
        await self.ensure_sheet()
        await self._execute(
            lambda s: s.spreadsheets().values().append(
                spreadsheetId=self._spreadsheet_id,
                range=self._range("A:A"),
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [to_row(record)]},
            ),
            "append",
        )
        logger.info(
            "sheets_row_appended",
            marketplace_url=record.marketplace_url,
            item_name=record.item_name,
            source="sheets",
        )

    async def existing_urls(self) -> set[str]:
        """Normalised URLs already in the worksheet (used to seed de-duplication)."""
        await self.ensure_sheet()
        response = await self._execute(
            lambda s: s.spreadsheets().values().get(
                spreadsheetId=self._spreadsheet_id, range=self._range(f"{URL_COLUMN}2:{URL_COLUMN}")
            ),
            "read_urls",
        )
        urls: set[str] = set()
        for row in response.get("values", []):
            if row:
                cleaned = clean_marketplace_url(str(row[0]))
                if cleaned:
                    urls.add(cleaned)
        logger.info("sheets_existing_urls_loaded", url_count=len(urls), source="sheets")
        return urls

    def get_backlog_url(self) -> str | None:
        if not self._spreadsheet_id:
            return None
        return f"https://docs.google.com/spreadsheets/d/{self._spreadsheet_id}/edit"
