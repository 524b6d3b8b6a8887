# app/services/stacks_api.py
"""
Stacks ledger API client.

Reads transactions and calls read-only contract functions through the Hiro
indexing API. Every outcome is reported as a FetchResult: either the decoded
JSON body or one of a closed set of reasons. Nothing here retries; the
caller decides whether a reason is worth another attempt.
"""
import json
import logging
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException, Timeout

from app.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_API_URLS = {
    "mainnet": "https://api.mainnet.hiro.so",
    "testnet": "https://api.testnet.hiro.so",
    "devnet": "http://localhost:3999",
}

CHUNK_SIZE = 8192


class FetchReason(str, Enum):
    """Why a ledger read did not produce a record."""
    TIMEOUT = "timeout"
    NOT_FOUND = "not-found"
    RATE_LIMITED = "rate-limited"
    API_ERROR = "api-error"


@dataclass(frozen=True)
class FetchResult:
    record: Optional[Dict[str, Any]] = None
    reason: Optional[FetchReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def success(cls, record: Dict[str, Any]) -> "FetchResult":
        return cls(record=record)

    @classmethod
    def failure(cls, reason: FetchReason, detail: str) -> "FetchResult":
        return cls(reason=reason, detail=detail)


class _DeadlineExceeded(Exception):
    pass


class _Watchdog:
    """
    Aborts an in-flight response once the overall deadline passes.

    A blocked socket read only returns when data or EOF arrives, so a peer
    trickling bytes can keep a read alive indefinitely. When the timer fires
    the socket is shut down, which wakes the reader with EOF.
    """

    def __init__(self, budget: float):
        self.fired = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None
        self._timer = threading.Timer(max(budget, 0.0), self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def attach(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
            fired = self.fired.is_set()
        if fired:
            _abort_response(response)

    def _fire(self) -> None:
        with self._lock:
            self.fired.set()
            response = self._response
        if response is not None:
            logger.debug("Stacks API deadline reached, aborting in-flight response")
            _abort_response(response)


def _response_socket(response: requests.Response) -> Optional[socket.socket]:
    """Find the socket behind a streamed response, if it is still attached."""
    raw = getattr(response, "raw", None)
    connection = getattr(raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if isinstance(sock, socket.socket):
        return sock
    # http.client keeps a socket.makefile() reader in fp
    fp = getattr(getattr(raw, "_fp", None), "fp", None)
    sock = getattr(getattr(fp, "raw", None), "_sock", None)
    return sock if isinstance(sock, socket.socket) else None


def _abort_response(response: requests.Response) -> None:
    """Wake a blocked reader with EOF; the reading thread closes the response itself."""
    sock = _response_socket(response)
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        # Already closed by the reader
        logger.debug(f"Socket shutdown during abort failed: {e}")


def get_api_base_url(network: str) -> str:
    """
    Resolve the API base URL for a network.

    STACKS_API_URL, when set, takes precedence over the built-in defaults.

    Raises:
        ValueError: If the network is unknown, whether or not an override is configured
    """
    if network not in DEFAULT_API_URLS:
        raise ValueError(f"Unknown Stacks network: {network!r}")
    if settings.STACKS_API_URL:
        return str(settings.STACKS_API_URL).rstrip("/")
    return DEFAULT_API_URLS[network]


def _request_headers() -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if settings.STACKS_API_KEY:
        headers["x-api-key"] = settings.STACKS_API_KEY
    return headers


def _read_body(response: requests.Response, deadline: float) -> bytes:
    """Read the response body, giving up once the deadline has passed."""
    body = b""
    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
        if time.monotonic() > deadline:
            raise _DeadlineExceeded()
        body += chunk
    if time.monotonic() > deadline:
        raise _DeadlineExceeded()
    return body


def _classify_status(status_code: int) -> Optional[FetchReason]:
    if status_code == 404:
        return FetchReason.NOT_FOUND
    if status_code == 429:
        return FetchReason.RATE_LIMITED
    if not 200 <= status_code < 300:
        return FetchReason.API_ERROR
    return None


def _timeout_result(api_url: str, timeout: float) -> FetchResult:
    logger.warning(f"Stacks API response exceeded {timeout}s deadline ({api_url}), abandoning")
    return FetchResult.failure(FetchReason.TIMEOUT, f"response not complete within {timeout}s")


def _execute(method: str, api_url: str, timeout: float, json_body: Optional[Dict[str, Any]] = None) -> FetchResult:
    """
    Issue one request and reduce it to a FetchResult.

    The whole exchange is bounded by ``timeout`` seconds. Connect and the
    header read each get at most the budget as socket timeouts; once headers
    arrive the body is read under a watchdog that aborts the connection when
    the overall deadline passes.
    """
    deadline = time.monotonic() + timeout
    watchdog = _Watchdog(timeout)
    watchdog.start()
    try:
        return _exchange(method, api_url, timeout, deadline, watchdog, json_body)
    finally:
        watchdog.cancel()


def _exchange(
    method: str,
    api_url: str,
    timeout: float,
    deadline: float,
    watchdog: _Watchdog,
    json_body: Optional[Dict[str, Any]],
) -> FetchResult:
    try:
        response = requests.request(
            method,
            api_url,
            headers=_request_headers(),
            json=json_body,
            timeout=(timeout, timeout),
            stream=True,
        )
    except Timeout as e:
        logger.warning(f"Stacks API request timed out ({api_url}): {e}")
        return FetchResult.failure(FetchReason.TIMEOUT, f"no response within {timeout}s")
    except RequestException as e:
        logger.error(f"Error calling Stacks API ({api_url}): {e}")
        return FetchResult.failure(FetchReason.API_ERROR, str(e))

    watchdog.attach(response)
    try:
        if time.monotonic() > deadline:
            return _timeout_result(api_url, timeout)

        reason = _classify_status(response.status_code)
        if reason is not None:
            logger.warning(f"Stacks API returned HTTP {response.status_code} for {api_url}")
            return FetchResult.failure(reason, f"HTTP {response.status_code}")

        body = _read_body(response, deadline)
        if watchdog.fired.is_set():
            return _timeout_result(api_url, timeout)
        record = json.loads(body)
        if not isinstance(record, dict):
            logger.error(f"Unexpected data structure from Stacks API: {type(record)}")
            return FetchResult.failure(FetchReason.API_ERROR, "response body is not a JSON object")
        return FetchResult.success(record)

    except _DeadlineExceeded:
        return _timeout_result(api_url, timeout)
    except (RequestException, OSError) as e:
        # An aborted or timed-out read surfaces as a connection error
        if watchdog.fired.is_set() or time.monotonic() >= deadline:
            return _timeout_result(api_url, timeout)
        logger.error(f"Error reading Stacks API response ({api_url}): {e}")
        return FetchResult.failure(FetchReason.API_ERROR, str(e))
    except ValueError as e:
        if watchdog.fired.is_set():
            return _timeout_result(api_url, timeout)
        logger.error(f"Error parsing Stacks API response ({api_url}): {e}")
        return FetchResult.failure(FetchReason.API_ERROR, f"invalid JSON: {e}")
    finally:
        response.close()


def fetch_transaction(settlement_ref: str, network: str, timeout: Optional[float] = None) -> FetchResult:
    """
    Fetch a transaction record by txid.

    Args:
        settlement_ref: Transaction id (0x prefix optional, URL-quoted into the path)
        network: One of devnet, testnet, mainnet
        timeout: Overall budget in seconds (defaults to STACKS_API_TIMEOUT_SECONDS)

    Returns:
        FetchResult with the transaction JSON on success, or a FetchReason:
        404 -> not-found, 429 -> rate-limited, other non-2xx / transport
        failure / bad body -> api-error, deadline exceeded -> timeout
    """
    budget = timeout if timeout is not None else settings.STACKS_API_TIMEOUT_SECONDS
    api_url = f"{get_api_base_url(network)}/extended/v1/tx/{quote(settlement_ref, safe='')}"
    result = _execute("GET", api_url, budget)
    if result.ok:
        logger.info(f"Fetched transaction {settlement_ref} (status={result.record.get('tx_status')})")
    return result


def call_read_only(
    contract_address: str,
    contract_name: str,
    function_name: str,
    arguments: List[str],
    network: str,
    sender: Optional[str] = None,
    timeout: Optional[float] = None,
) -> FetchResult:
    """
    Call a read-only contract function.

    Args:
        contract_address: Deployer address of the contract
        contract_name: Contract name
        function_name: Read-only function to call
        arguments: Hex-serialized Clarity arguments
        network: One of devnet, testnet, mainnet
        sender: Sender principal for the call (defaults to the contract address)
        timeout: Overall budget in seconds (defaults to STACKS_API_TIMEOUT_SECONDS)

    Returns:
        FetchResult whose record is the API response, e.g.
        {"okay": true, "result": "0x..."}
    """
    budget = timeout if timeout is not None else settings.STACKS_API_TIMEOUT_SECONDS
    api_url = (
        f"{get_api_base_url(network)}/v2/contracts/call-read/"
        f"{contract_address}/{contract_name}/{function_name}"
    )
    payload = {"sender": sender or contract_address, "arguments": arguments}
    return _execute("POST", api_url, budget, json_body=payload)
