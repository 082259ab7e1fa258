import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests

from rater.domain.entities import Provider
from rater.domain.errors import AuthorizationDenied, NotFound, RateLimited, RemoteUnavailable

logger = logging.getLogger(__name__)

SHEETS_API_URL = 'https://sheets.googleapis.com/v4/spreadsheets'

_ROW_RE = re.compile(r'![A-Z]+(\d+)')


def parse_updated_row(updated_range: Optional[str]) -> Optional[int]:
    """Row number from an A1 range such as 'Sheet1!A7:E7'."""
    if not updated_range:
        return None
    match = _ROW_RE.search(updated_range)
    return int(match.group(1)) if match else None


class SheetsGateway:
    """Raw Google Sheets access for the ratings sheet (columns A..E, data from row 2)."""

    def __init__(self, session, sheet_id: str, sheet_name: str = 'Sheet1',
                 http: Optional[requests.Session] = None,
                 base_url: str = SHEETS_API_URL,
                 timeout: float = 15):
        self._session = session
        self.sheet_id = sheet_id
        self.sheet_name = sheet_name or 'Sheet1'
        self._http = http or requests.Session()
        self.base_url = base_url
        self.timeout = timeout

    def _values_url(self, a1_range: str, suffix: str = '') -> str:
        return f"{self.base_url}/{self.sheet_id}/values/{quote(a1_range, safe='')}{suffix}"

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
        token = await self._session.get_token(Provider.GOOGLE)
        response = await self._send(operation, method, url, token, **kwargs)
        if response.status_code == 401:
            logger.warning(f"Google token rejected during {operation}, refreshing")
            token = await self._session.refresh(Provider.GOOGLE)
            response = await self._send(operation, method, url, token, **kwargs)

        self._raise_for_status(response, operation)
        if not response.content:
            return {}
        return response.json()

    async def _send(self, operation: str, method: str, url: str, token: str, **kwargs) -> requests.Response:
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        }
        try:
            return await asyncio.to_thread(
                self._http.request, method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise RemoteUnavailable(f"Google Sheets unreachable during {operation}: {e}")

    def _raise_for_status(self, response: requests.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return

        try:
            message = response.json().get('error', {}).get('message', '')
        except (ValueError, AttributeError):
            message = response.text
        msg = f"Google Sheets {operation} failed: {status} {message}".strip()

        if status == 429:
            retry_after = response.headers.get('Retry-After', '1')
            raise RateLimited(retry_after_ms=int(retry_after) * 1000 if retry_after.isdigit() else 1000)
        if status in (401, 403):
            raise AuthorizationDenied(msg, error={'status': status, 'message': message})
        if status == 404:
            raise NotFound(msg)
        raise RemoteUnavailable(msg)

    async def read_rows(self) -> List[List[str]]:
        data = await self._request('read', 'GET', self._values_url(f"{self.sheet_name}!A2:E"))
        return [[str(cell) for cell in row] for row in data.get('values', [])]

    async def append_row(self, values: Sequence[Any]) -> Optional[int]:
        url = self._values_url(f"{self.sheet_name}!A:E", ':append')
        data = await self._request('append', 'POST', url,
                                   params={'valueInputOption': 'RAW'},
                                   json={'values': [list(values)]})
        return parse_updated_row((data.get('updates') or {}).get('updatedRange'))

    async def update_rating(self, row_position: int, rating: float, rated_at: str) -> None:
        url = self._values_url(f"{self.sheet_name}!D{row_position}:E{row_position}")
        await self._request('update', 'PUT', url,
                            params={'valueInputOption': 'RAW'},
                            json={'values': [[rating, rated_at]]})
