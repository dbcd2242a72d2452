from __future__ import annotations

import itertools
import logging
from typing import Any, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from core.errors import RpcError, TransientError

logger = logging.getLogger(__name__)

# JSON-RPC codes nodes return while catching up or rate limiting.
TRANSIENT_RPC_CODES = {-32004, -32005, -32014, -32603, 429}
TRANSIENT_HTTP_STATUS = {429, 500, 502, 503, 504}


def make_session(retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    session = requests.Session()
    policy = Retry(
        total=retries,
        connect=retries,
        read=retries,
        backoff_factor=backoff_factor,
        status_forcelist=sorted(TRANSIENT_HTTP_STATUS),
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=policy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over a retrying requests session.

    Raises TransientError for anything a later attempt could fix and RpcError
    for well-formed error responses that it could not.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = float(timeout)
        self.session = session or make_session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            r = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientError(f"{method}: {e}") from e

        if r.status_code in TRANSIENT_HTTP_STATUS:
            raise TransientError(f"{method}: HTTP {r.status_code}")
        if r.status_code >= 400:
            raise RpcError(r.status_code, f"{method}: HTTP {r.status_code} {r.text[:200]}")

        try:
            data = r.json()
        except ValueError as e:
            raise TransientError(f"{method}: non-JSON response") from e

        err = data.get("error") if isinstance(data, dict) else None
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            if code in TRANSIENT_RPC_CODES:
                raise TransientError(f"{method}: {code} {message}")
            raise RpcError(code, message)

        if not isinstance(data, dict) or "result" not in data:
            raise TransientError(f"{method}: response without result")
        return data["result"]

    def close(self) -> None:
        self.session.close()
