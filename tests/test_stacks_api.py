"""
Unit tests for the Stacks ledger API client.
"""
import itertools
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from unittest.mock import patch, MagicMock

import requests

from app.core.config import settings
from app.services.stacks_api import (
    DEFAULT_API_URLS,
    FetchReason,
    FetchResult,
    call_read_only,
    fetch_transaction,
    get_api_base_url,
)

TXID = "0x" + "ab" * 32


def make_response(status_code=200, body=None, chunks=None):
    """Build a streamed requests.Response stand-in."""
    response = MagicMock()
    response.status_code = status_code
    if chunks is None:
        chunks = [json.dumps(body if body is not None else {}).encode("utf-8")]
    response.iter_content.return_value = iter(chunks)
    return response


@pytest.fixture(autouse=True)
def default_api_settings():
    """Run every test against built-in URLs and without an API key."""
    with patch.object(settings, "STACKS_API_URL", None), patch.object(settings, "STACKS_API_KEY", None):
        yield


class TestGetApiBaseUrl:
    """Test API base URL resolution."""

    def test_known_networks(self):
        """Each network maps to its default URL."""
        for network, url in DEFAULT_API_URLS.items():
            assert get_api_base_url(network) == url

    def test_unknown_network(self):
        """Unknown networks raise ValueError."""
        with pytest.raises(ValueError):
            get_api_base_url("regtest")

    def test_override_wins(self):
        """STACKS_API_URL replaces the network default."""
        with patch.object(settings, "STACKS_API_URL", "http://ledger.internal:3999/"):
            assert get_api_base_url("mainnet") == "http://ledger.internal:3999"

    def test_override_does_not_admit_unknown_network(self):
        """An override URL still requires a known network."""
        with patch.object(settings, "STACKS_API_URL", "http://ledger.internal:3999"):
            with pytest.raises(ValueError):
                get_api_base_url("regtest")


class TestFetchTransaction:
    """Test transaction fetches and their failure taxonomy."""

    @patch("app.services.stacks_api.requests.request")
    def test_success(self, mock_request):
        """A 200 with a JSON object is returned as the record."""
        mock_request.return_value = make_response(body={"tx_id": TXID, "tx_status": "success"})

        result = fetch_transaction(TXID, "testnet", timeout=2.0)

        assert result.ok is True
        assert result.record["tx_status"] == "success"
        method, url = mock_request.call_args[0]
        assert method == "GET"
        assert url == f"{DEFAULT_API_URLS['testnet']}/extended/v1/tx/{TXID}"
        assert mock_request.call_args[1]["timeout"] == (2.0, 2.0)
        assert mock_request.call_args[1]["stream"] is True

    @patch("app.services.stacks_api.requests.request")
    def test_settlement_ref_is_quoted(self, mock_request):
        """Path separators in the reference cannot escape the tx path."""
        mock_request.return_value = make_response(body={})

        fetch_transaction("../v2/info", "testnet")

        url = mock_request.call_args[0][1]
        assert url.endswith("/extended/v1/tx/..%2Fv2%2Finfo")

    @patch("app.services.stacks_api.requests.request")
    def test_default_timeout(self, mock_request):
        """The configured timeout applies when none is given."""
        mock_request.return_value = make_response(body={})

        fetch_transaction(TXID, "testnet")

        budget = settings.STACKS_API_TIMEOUT_SECONDS
        assert mock_request.call_args[1]["timeout"] == (budget, budget)

    @patch("app.services.stacks_api.requests.request")
    def test_not_found(self, mock_request):
        """404 maps to not-found."""
        response = make_response(status_code=404)
        mock_request.return_value = response

        result = fetch_transaction(TXID, "testnet")

        assert result.ok is False
        assert result.reason == FetchReason.NOT_FOUND
        response.close.assert_called_once()

    @patch("app.services.stacks_api.requests.request")
    def test_rate_limited(self, mock_request):
        """429 maps to rate-limited."""
        mock_request.return_value = make_response(status_code=429)

        assert fetch_transaction(TXID, "testnet").reason == FetchReason.RATE_LIMITED

    @patch("app.services.stacks_api.requests.request")
    def test_server_error(self, mock_request):
        """Other non-2xx statuses map to api-error."""
        mock_request.return_value = make_response(status_code=502)

        result = fetch_transaction(TXID, "testnet")

        assert result.reason == FetchReason.API_ERROR
        assert result.detail == "HTTP 502"

    @patch("app.services.stacks_api.requests.request")
    def test_connect_timeout(self, mock_request):
        """A requests Timeout maps to timeout."""
        mock_request.side_effect = requests.exceptions.ConnectTimeout("slow")

        assert fetch_transaction(TXID, "testnet").reason == FetchReason.TIMEOUT

    @patch("app.services.stacks_api.requests.request")
    def test_connection_error(self, mock_request):
        """Transport failures map to api-error."""
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")

        result = fetch_transaction(TXID, "testnet")

        assert result.reason == FetchReason.API_ERROR
        assert "refused" in result.detail

    @patch("app.services.stacks_api.requests.request")
    def test_invalid_json(self, mock_request):
        """An unparseable body maps to api-error."""
        response = make_response(chunks=[b"<html>oops</html>"])
        mock_request.return_value = response

        result = fetch_transaction(TXID, "testnet")

        assert result.reason == FetchReason.API_ERROR
        response.close.assert_called_once()

    @patch("app.services.stacks_api.requests.request")
    def test_non_object_body(self, mock_request):
        """A JSON array is not a transaction record."""
        mock_request.return_value = make_response(body=[1, 2, 3])

        assert fetch_transaction(TXID, "testnet").reason == FetchReason.API_ERROR

    @patch("app.services.stacks_api.time.monotonic")
    @patch("app.services.stacks_api.requests.request")
    def test_deadline_abandons_body(self, mock_request, mock_monotonic):
        """A body still streaming past the deadline is abandoned as timeout."""
        response = make_response(chunks=[b'{"tx_status":', b'"success"}'])
        mock_request.return_value = response
        # start, then first chunk check already past start + 1.0
        mock_monotonic.side_effect = itertools.chain([100.0], itertools.repeat(101.5))

        result = fetch_transaction(TXID, "testnet", timeout=1.0)

        assert result.reason == FetchReason.TIMEOUT
        response.close.assert_called_once()

    @patch("app.services.stacks_api.requests.request")
    def test_read_error_before_deadline(self, mock_request):
        """A connection drop mid-body maps to api-error."""
        response = MagicMock()
        response.status_code = 200
        response.iter_content.side_effect = requests.exceptions.ChunkedEncodingError("reset")
        mock_request.return_value = response

        result = fetch_transaction(TXID, "testnet", timeout=30.0)

        assert result.reason == FetchReason.API_ERROR
        response.close.assert_called_once()

    @patch("app.services.stacks_api.requests.request")
    def test_api_key_header(self, mock_request):
        """STACKS_API_KEY is sent as x-api-key."""
        mock_request.return_value = make_response(body={})

        with patch.object(settings, "STACKS_API_KEY", "secret"):
            fetch_transaction(TXID, "testnet")

        assert mock_request.call_args[1]["headers"]["x-api-key"] == "secret"

    @patch("app.services.stacks_api.requests.request")
    def test_no_api_key_header_by_default(self, mock_request):
        """Without a key no x-api-key header is sent."""
        mock_request.return_value = make_response(body={})

        fetch_transaction(TXID, "testnet")

        assert "x-api-key" not in mock_request.call_args[1]["headers"]


class TestCallReadOnly:
    """Test read-only contract calls."""

    @patch("app.services.stacks_api.requests.request")
    def test_posts_arguments(self, mock_request):
        """Arguments and sender are posted to the call-read endpoint."""
        mock_request.return_value = make_response(body={"okay": True, "result": "0x09"})

        result = call_read_only(
            "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM",
            "refund-escrow",
            "get-escrow",
            ["0x0200000001ff"],
            "devnet",
        )

        assert result.ok is True
        assert result.record == {"okay": True, "result": "0x09"}
        method, url = mock_request.call_args[0]
        assert method == "POST"
        assert url == (
            "http://localhost:3999/v2/contracts/call-read/"
            "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM/refund-escrow/get-escrow"
        )
        assert mock_request.call_args[1]["json"] == {
            "sender": "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM",
            "arguments": ["0x0200000001ff"],
        }

    @patch("app.services.stacks_api.requests.request")
    def test_explicit_sender(self, mock_request):
        """An explicit sender overrides the contract address."""
        mock_request.return_value = make_response(body={"okay": True, "result": "0x09"})

        call_read_only("ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM", "refund-escrow", "get-escrow", [], "testnet",
                       sender="ST000000000000000000002AMW42H")

        assert mock_request.call_args[1]["json"]["sender"] == "ST000000000000000000002AMW42H"

    @patch("app.services.stacks_api.requests.request")
    def test_rate_limited(self, mock_request):
        """Read-only calls share the failure taxonomy."""
        mock_request.return_value = make_response(status_code=429)

        result = call_read_only("ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM", "refund-escrow", "get-escrow", [], "testnet")

        assert result == FetchResult.failure(FetchReason.RATE_LIMITED, "HTTP 429")


class SlowLedgerHandler(BaseHTTPRequestHandler):
    """Serves a transaction record too slowly to fit any short budget."""

    mode = "trickle"

    def do_GET(self):
        body = json.dumps({"tx_id": TXID, "tx_status": "success"}).encode("utf-8")
        try:
            if self.mode == "stall":
                time.sleep(4.0)
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            for i in range(len(body)):
                self.wfile.write(body[i:i + 1])
                self.wfile.flush()
                time.sleep(0.1)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_ledger():
    """Start a local ledger API that drips its response."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), SlowLedgerHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    url = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        with patch.object(settings, "STACKS_API_URL", url):
            yield server
    finally:
        server.shutdown()
        server.server_close()


class TestDeadlineOnRealSocket:
    """Test that the budget holds against a live connection."""

    def test_trickled_body_is_cut_off(self, slow_ledger):
        """A body arriving one byte at a time is abandoned near the deadline."""
        SlowLedgerHandler.mode = "trickle"

        started = time.monotonic()
        result = fetch_transaction(TXID, "testnet", timeout=1.0)
        elapsed = time.monotonic() - started

        assert result.reason == FetchReason.TIMEOUT
        assert elapsed < 2.0

    def test_stalled_headers_time_out(self, slow_ledger):
        """A server that never sends headers times out within the budget."""
        SlowLedgerHandler.mode = "stall"

        started = time.monotonic()
        result = fetch_transaction(TXID, "testnet", timeout=1.0)
        elapsed = time.monotonic() - started

        assert result.reason == FetchReason.TIMEOUT
        assert elapsed < 2.0

