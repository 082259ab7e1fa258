from unittest.mock import Mock

import pytest
import requests

from rater.domain.entities import Provider
from rater.domain.errors import AuthorizationDenied, NotFound, RateLimited, RemoteUnavailable
from rater.infrastructure.providers.sheets import SheetsGateway, parse_updated_row
from rater.tests.fakes import FakeSession


def response(status=200, payload=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.content = b'{}' if payload is not None else b''
    resp.json.return_value = payload or {}
    resp.headers = headers or {}
    resp.text = ''
    return resp


class TestParseUpdatedRow:
    """Tests for reading the row number out of an A1 range."""

    def test_row_number(self):
        assert parse_updated_row('Sheet1!A7:E7') == 7
        assert parse_updated_row("'My Sheet'!A12:E12") == 12

    def test_missing(self):
        assert parse_updated_row(None) is None
        assert parse_updated_row('garbage') is None


class TestSheetsGateway:
    """Contract tests for the Google Sheets gateway."""

    def setup_method(self):
        """Set up test fixtures."""
        self.session = FakeSession()
        self.http = Mock()
        self.gateway = SheetsGateway(self.session, 'sheet-id', 'Sheet1', http=self.http,
                                     base_url='https://sheets.test/v4/spreadsheets')

    async def test_read_rows(self):
        """Rows are read from A2:E with a bearer token."""
        self.http.request.return_value = response(200, {'values': [['t1', 'A', 'S', '4.5', '2024-01-01 10:00:00'], ['t2']]})

        rows = await self.gateway.read_rows()

        assert rows == [['t1', 'A', 'S', '4.5', '2024-01-01 10:00:00'], ['t2']]
        method, url = self.http.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://sheets.test/v4/spreadsheets/sheet-id/values/Sheet1%21A2%3AE'
        assert self.http.request.call_args.kwargs['headers']['Authorization'] == 'Bearer token-1'

    async def test_read_empty_sheet(self):
        """A sheet without data rows yields no rows."""
        self.http.request.return_value = response(200, {'range': 'Sheet1!A2:E'})

        assert await self.gateway.read_rows() == []

    async def test_append_returns_row_number(self):
        """Appends use RAW input and report the written row."""
        self.http.request.return_value = response(200, {'updates': {'updatedRange': 'Sheet1!A9:E9'}})

        position = await self.gateway.append_row(['t1', 'A', 'S', 4.5, '2024-01-01 10:00:00'])

        assert position == 9
        method, url = self.http.request.call_args[0]
        kwargs = self.http.request.call_args.kwargs
        assert method == 'POST'
        assert url.endswith('/values/Sheet1%21A%3AE:append')
        assert kwargs['params'] == {'valueInputOption': 'RAW'}
        assert kwargs['json'] == {'values': [['t1', 'A', 'S', 4.5, '2024-01-01 10:00:00']]}

    async def test_update_rating_writes_two_cells(self):
        """Updates only touch the rating and timestamp columns."""
        self.http.request.return_value = response(200, {})

        await self.gateway.update_rating(5, 3.5, '2024-01-01 10:00:00')

        method, url = self.http.request.call_args[0]
        assert method == 'PUT'
        assert url.endswith('/values/Sheet1%21D5%3AE5')
        assert self.http.request.call_args.kwargs['json'] == {'values': [[3.5, '2024-01-01 10:00:00']]}

    async def test_unauthorized_refreshes_once(self):
        """A 401 forces one token refresh and one retry."""
        self.http.request.side_effect = [response(401, {}), response(200, {'values': []})]

        await self.gateway.read_rows()

        assert self.session.refresh_calls == [Provider.GOOGLE]
        second_headers = self.http.request.call_args_list[1].kwargs['headers']
        assert second_headers['Authorization'] == 'Bearer token-2'

    async def test_unauthorized_after_refresh_is_denied(self):
        """A second 401 is surfaced instead of looping."""
        self.http.request.side_effect = [response(401, {}), response(401, {})]

        with pytest.raises(AuthorizationDenied):
            await self.gateway.read_rows()
        assert self.http.request.call_count == 2

    @pytest.mark.parametrize('status, expected', [
        (403, AuthorizationDenied),
        (404, NotFound),
        (500, RemoteUnavailable),
    ])
    async def test_error_mapping(self, status, expected):
        """HTTP failures map to domain errors."""
        self.http.request.return_value = response(status, {'error': {'message': 'nope'}})

        with pytest.raises(expected):
            await self.gateway.read_rows()

    async def test_rate_limited(self):
        """A 429 is RateLimited with the advertised delay."""
        self.http.request.return_value = response(429, {}, headers={'Retry-After': '2'})

        with pytest.raises(RateLimited) as exc_info:
            await self.gateway.read_rows()
        assert exc_info.value.retry_after_ms == 2000

    async def test_transport_failure(self):
        """Connection errors are RemoteUnavailable."""
        self.http.request.side_effect = requests.Timeout("slow")

        with pytest.raises(RemoteUnavailable):
            await self.gateway.read_rows()
