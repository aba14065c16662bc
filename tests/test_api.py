"""
Unit tests for the Google API client wrapper and token credentials.

Google responses are mocked; no network access is required.
"""

import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from crm_sync.api.credentials import TokenCredentialsProvider
from crm_sync.api.google_api import (
    DEFAULT_MAX_RETRIES,
    GoogleAPIClient,
    GoogleAPIError,
    SCOPES,
    SyncTokenExpiredError,
)
from crm_sync.errors import NotFoundError, SyncCancelledError, TransientError, ValidationError
from crm_sync.sync.registry import SyncContext


def http_error(status, content=b"error"):
    mock_resp = MagicMock()
    mock_resp.status = status
    return HttpError(mock_resp, content)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return GoogleAPIClient(MagicMock(), sleep=sleeps.append)


class TestClientInitialization:
    def test_defaults(self):
        client = GoogleAPIClient(MagicMock())
        assert client.max_retries == DEFAULT_MAX_RETRIES

    def test_max_retries_at_least_one(self):
        client = GoogleAPIClient(MagicMock(), max_retries=0)
        assert client.max_retries == 1


class TestService:
    @patch("crm_sync.api.google_api.build")
    def test_service_is_cached(self, mock_build, client):
        first = client.service("people", "v1")
        second = client.service("people", "v1")

        assert first is second
        mock_build.assert_called_once_with(
            "people", "v1", credentials=client.credentials, cache_discovery=False
        )

    @patch("crm_sync.api.google_api.build")
    def test_build_failure_is_transient(self, mock_build, client):
        mock_build.side_effect = RuntimeError("discovery unavailable")

        with pytest.raises(TransientError, match="Failed to create gmail API service"):
            client.service("gmail", "v1")


class TestExecute:
    def test_success(self, client, sleeps):
        assert client.execute(lambda: {"ok": True}, "op") == {"ok": True}
        assert sleeps == []

    def test_rate_limit_retries_with_backoff(self, client, sleeps):
        calls = [0]

        def operation():
            calls[0] += 1
            if calls[0] < 3:
                raise http_error(429, b"Rate limited")
            return {"result": "success"}

        assert client.execute(operation, "op") == {"result": "success"}
        assert calls[0] == 3
        assert sleeps == [1.0, 2.0]

    def test_server_error_retries(self, client, sleeps):
        responses = [http_error(503), {"ok": True}]

        def operation():
            item = responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        assert client.execute(operation, "op") == {"ok": True}
        assert len(sleeps) == 1

    def test_retries_exhausted(self, client, sleeps):
        def operation():
            raise http_error(500)

        with pytest.raises(TransientError, match="after 5 attempts"):
            client.execute(operation, "op")
        assert len(sleeps) == DEFAULT_MAX_RETRIES - 1

    def test_delay_capped(self, sleeps):
        client = GoogleAPIClient(
            MagicMock(), max_retries=4, initial_retry_delay=10, max_retry_delay=15,
            sleep=sleeps.append,
        )

        with pytest.raises(TransientError):
            client.execute(MagicMock(side_effect=http_error(429)), "op")
        assert sleeps == [10, 15, 15]

    def test_network_error_retried(self, client, sleeps):
        operation = MagicMock(side_effect=[ConnectionResetError("reset"), "done"])

        assert client.execute(operation, "op") == "done"
        assert len(sleeps) == 1

    def test_gone_raises_sync_token_expired(self, client, sleeps):
        with pytest.raises(SyncTokenExpiredError):
            client.execute(MagicMock(side_effect=http_error(410)), "list_connections")
        assert sleeps == []

    def test_not_found(self, client):
        with pytest.raises(NotFoundError):
            client.execute(MagicMock(side_effect=http_error(404)), "get")

    def test_other_client_error_not_retried(self, client, sleeps):
        operation = MagicMock(side_effect=http_error(400, b"Bad request"))

        with pytest.raises(GoogleAPIError, match="op failed"):
            client.execute(operation, "op")
        assert operation.call_count == 1
        assert sleeps == []

    def test_cancel_interrupts_retry_wait(self):
        client = GoogleAPIClient(MagicMock(), initial_retry_delay=30, max_retry_delay=30)
        operation = MagicMock(side_effect=http_error(503))
        ctx = SyncContext()
        timer = threading.Timer(0.05, ctx.cancel)
        timer.start()

        started = time.monotonic()
        try:
            with pytest.raises(SyncCancelledError):
                client.execute(operation, "op", ctx)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5
        assert operation.call_count == 1

    def test_cancelled_context_stops_before_next_attempt(self, client, sleeps):
        ctx = SyncContext()
        ctx.cancel()
        operation = MagicMock(side_effect=[ConnectionResetError("reset"), "done"])

        with pytest.raises(SyncCancelledError):
            client.execute(operation, "op", ctx)
        assert operation.call_count == 1
        assert sleeps == []

    def test_uncancelled_context_still_retries(self, client):
        ctx = SyncContext()
        client.initial_retry_delay = 0.01
        operation = MagicMock(side_effect=[http_error(429), {"ok": True}])

        assert client.execute(operation, "op", ctx) == {"ok": True}
        assert operation.call_count == 2


class TestIterPages:
    def test_follows_page_tokens(self, client):
        pages = {
            None: {"items": [1], "nextPageToken": "p2"},
            "p2": {"items": [2], "nextPageToken": "p3"},
            "p3": {"items": [3]},
        }
        tokens = []

        def request(page_token):
            tokens.append(page_token)
            return MagicMock(execute=MagicMock(return_value=pages[page_token]))

        responses = list(client.iter_pages(request, "list"))

        assert [r["items"] for r in responses] == [[1], [2], [3]]
        assert tokens == [None, "p2", "p3"]

    def test_cancelled_before_next_page(self, client):
        ctx = SyncContext()

        def request(page_token):
            return MagicMock(execute=MagicMock(return_value={"nextPageToken": "more"}))

        pages = client.iter_pages(request, "list", ctx)
        next(pages)
        ctx.cancel()

        with pytest.raises(SyncCancelledError):
            next(pages)


class TestTokenCredentialsProvider:
    def write_token(self, path, **overrides):
        info = {
            "token": "access",
            "refresh_token": "refresh",
            "client_id": "client-id",
            "client_secret": "secret",
        }
        info.update(overrides)
        path.write_text(json.dumps({k: v for k, v in info.items() if v is not None}))

    def test_missing_token(self, tmp_path):
        provider = TokenCredentialsProvider(tmp_path)

        with pytest.raises(ValidationError, match="No authorized token"):
            provider("me@example.com")

    def test_loads_valid_token(self, tmp_path):
        self.write_token(tmp_path / "token_me@example.com.json")

        creds = TokenCredentialsProvider(tmp_path)("me@example.com")

        assert creds.token == "access"
        assert creds.valid

    def test_default_account_token(self, tmp_path):
        self.write_token(tmp_path / "token.json")

        creds = TokenCredentialsProvider(tmp_path).get_credentials(None)

        assert creds.refresh_token == "refresh"

    def test_invalid_token_file(self, tmp_path):
        (tmp_path / "token.json").write_text("{not json")

        with pytest.raises(ValidationError, match="Invalid token file"):
            TokenCredentialsProvider(tmp_path)(None)

    def test_unrefreshable_token(self, tmp_path):
        self.write_token(tmp_path / "token.json", token=None)

        with pytest.raises(ValidationError, match="cannot be refreshed"):
            TokenCredentialsProvider(tmp_path)(None)

    def test_default_scopes(self, tmp_path):
        assert TokenCredentialsProvider(tmp_path).scopes == SCOPES

    def test_list_accounts(self, tmp_path):
        self.write_token(tmp_path / "token_b@example.com.json")
        self.write_token(tmp_path / "token_a@example.com.json")
        (tmp_path / "config.yaml").write_text("")

        accounts = TokenCredentialsProvider(tmp_path).list_accounts()

        assert accounts == ["a@example.com", "b@example.com"]
