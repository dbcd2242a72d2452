import pytest
import requests

from core.backoff import Backoff
from core.errors import RpcError, TransientError
from core.rpc import JsonRpcClient


class Response:
    def __init__(self, body=None, status=200, text=""):
        self.body = body
        self.status_code = status
        self.text = text

    def json(self):
        if self.body is None:
            raise ValueError("no json")
        return self.body


class Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.payloads = []

    def post(self, url, json=None, timeout=None):
        self.payloads.append(json)
        if self.error is not None:
            raise self.error
        return self.response


def client(**kw):
    session = Session(**kw)
    return JsonRpcClient("http://node", session=session), session


def test_call_returns_result_and_numbers_requests():
    rpc, session = client(response=Response({"jsonrpc": "2.0", "id": 1, "result": 7}))
    assert rpc.call("getSlot") == 7
    assert rpc.call("getSlot") == 7
    assert [p["id"] for p in session.payloads] == [1, 2]
    assert session.payloads[0]["params"] == []


def test_result_may_be_null():
    rpc, _ = client(response=Response({"result": None}))
    assert rpc.call("getTransaction", ["sig"]) is None


@pytest.mark.parametrize("kw", [
    {"error": requests.Timeout("slow")},
    {"response": Response(status=429)},
    {"response": Response(status=503)},
    {"response": Response(None)},
    {"response": Response({"error": {"code": -32005, "message": "node behind"}})},
    {"response": Response({"id": 1})},
])
def test_transient_failures(kw):
    rpc, _ = client(**kw)
    with pytest.raises(TransientError):
        rpc.call("getSlot")


def test_error_response_is_rpc_error():
    rpc, _ = client(response=Response({"error": {"code": -32602, "message": "Invalid param"}}))
    with pytest.raises(RpcError) as exc:
        rpc.call("getBalance", ["x"])
    assert exc.value.code == -32602


def test_client_error_status_is_rpc_error():
    rpc, _ = client(response=Response(status=401, text="unauthorized"))
    with pytest.raises(RpcError):
        rpc.call("getSlot")


def test_backoff_doubles_up_to_cap_and_resets():
    b = Backoff(base=1, cap=5, jitter=0)
    assert [b.next() for _ in range(5)] == [1, 2, 4, 5, 5]
    b.reset()
    assert b.next() == 1
