import base64
import json
import struct

import pytest
import requests
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from core.errors import ConfigError, DataError, ExecutionError, TransientError
from treasury import program
from treasury.jupiter import JupiterClient, SwapQuote, decode_lookup_table, instruction_from_json
from treasury.wallet import associated_token_address, check_wallet, load_keypair, token_program_id


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status
        self.text = json.dumps(payload)

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append(("GET", url, params))
        return self.response

    def post(self, url, json=None, timeout=None):
        self.requests.append(("POST", url, json))
        return self.response


# ------------------------------------------------------------
# wallet
# ------------------------------------------------------------

def test_load_keypair_round_trips_solana_cli_format(tmp_path):
    kp = Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(kp))))
    assert load_keypair(path).pubkey() == kp.pubkey()


@pytest.mark.parametrize("content", ["[1, 2, 3]", "not json", "{}"])
def test_load_keypair_rejects_bad_files(tmp_path, content):
    path = tmp_path / "id.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_keypair(path)


def test_load_keypair_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_keypair(tmp_path / "missing.json")


def test_check_wallet():
    kp = Keypair()
    check_wallet(kp, "")
    check_wallet(kp, str(kp.pubkey()))
    with pytest.raises(ConfigError):
        check_wallet(kp, str(Keypair().pubkey()))


def test_associated_token_address_matches_spl_derivation():
    owner, mint = Keypair().pubkey(), Keypair().pubkey()
    assert associated_token_address(owner, mint) == get_associated_token_address(owner, mint)
    assert associated_token_address(owner, mint, TOKEN_2022_PROGRAM_ID) != associated_token_address(owner, mint)


def test_token_program_choice():
    assert token_program_id("token") == TOKEN_PROGRAM_ID
    assert token_program_id("token-2022") == TOKEN_2022_PROGRAM_ID
    with pytest.raises(ConfigError):
        token_program_id("token-2023")


# ------------------------------------------------------------
# jupiter
# ------------------------------------------------------------

def test_instruction_from_json():
    a, b = Keypair().pubkey(), Keypair().pubkey()
    ix = instruction_from_json({
        "programId": str(TOKEN_PROGRAM_ID),
        "accounts": [
            {"pubkey": str(a), "isSigner": True, "isWritable": True},
            {"pubkey": str(b), "isSigner": False, "isWritable": False},
        ],
        "data": base64.b64encode(b"\x11\x01").decode(),
    })
    assert ix.program_id == TOKEN_PROGRAM_ID
    assert bytes(ix.data) == b"\x11\x01"
    assert [m.pubkey for m in ix.accounts] == [a, b]
    assert ix.accounts[0].is_signer and not ix.accounts[1].is_writable


def test_instruction_from_json_rejects_junk():
    with pytest.raises(DataError):
        instruction_from_json({"programId": "nope"})


def test_decode_lookup_table():
    keys = [Keypair().pubkey() for _ in range(3)]
    data = bytes(56) + b"".join(bytes(k) for k in keys)
    table = decode_lookup_table(str(TOKEN_PROGRAM_ID), data)
    assert list(table.addresses) == keys
    with pytest.raises(DataError):
        decode_lookup_table(str(TOKEN_PROGRAM_ID), bytes(56) + b"\x01")


def test_quote_parses_amounts_and_min_out():
    session = FakeSession(FakeResponse({
        "inAmount": "692999999",
        "outAmount": "2000000",
        "otherAmountThreshold": "1980000",
        "priceImpactPct": "0.01",
    }))
    q = JupiterClient("https://jup.test/swap/v1", session=session).quote("in", "out", 692_999_999, 100)
    assert (q.in_amount, q.out_amount, q.min_out_amount) == (692_999_999, 2_000_000, 1_980_000)
    method, url, params = session.requests[0]
    assert url == "https://jup.test/swap/v1/quote"
    assert params["amount"] == "692999999" and params["slippageBps"] == 100


def test_swap_instructions_request_disables_auto_wrap():
    swap = {"programId": str(TOKEN_PROGRAM_ID), "accounts": [], "data": ""}
    session = FakeSession(FakeResponse({"swapInstruction": swap, "addressLookupTableAddresses": ["T1"]}))
    client = JupiterClient(session=session)
    ixs = client.swap_instructions(SwapQuote("a", "b", 1, 2, 2, "0", {"x": 1}), str(Keypair().pubkey()), 50_000)
    body = session.requests[0][2]
    assert body["wrapAndUnwrapSol"] is False
    assert body["prioritizationFeeLamports"] == 50_000
    assert body["quoteResponse"] == {"x": 1}
    assert ixs.lookup_tables == ["T1"]
    assert len(ixs.ordered()) == 1


@pytest.mark.parametrize("status, payload, error", [
    (429, {}, TransientError),
    (503, {}, TransientError),
    (400, {"error": "no route"}, ExecutionError),
    (200, {"error": "Could not find any route"}, ExecutionError),
])
def test_quote_errors(status, payload, error):
    client = JupiterClient(session=FakeSession(FakeResponse(payload, status)))
    with pytest.raises(error):
        client.quote("in", "out", 1, 100)


def test_quote_connection_failure_is_transient():
    class Down:
        def get(self, *a, **kw):
            raise requests.ConnectionError("refused")

    with pytest.raises(TransientError):
        JupiterClient(session=Down()).quote("in", "out", 1, 100)


# ------------------------------------------------------------
# program config
# ------------------------------------------------------------

def _string(s):
    raw = s.encode()
    return struct.pack("<I", len(raw)) + raw


def config_bytes(authority, treasury, burned=12345):
    return (
        bytes(8)
        + bytes(authority)
        + _string("Sacred Waste")
        + _string("WASTE")
        + _string("https://example.invalid/meta.json")
        + bytes(treasury)
        + struct.pack("<QQQ", 1_000_000, 7, burned)
        + bytes([254])
    )


class ProgramRpc:
    def __init__(self, data):
        self.data = data
        self.asked = []

    def get_account_data(self, address):
        self.asked.append(address)
        return self.data


def test_decode_collection_config():
    auth, treasury = Keypair().pubkey(), Keypair().pubkey()
    cfg = program.decode_collection_config(config_bytes(auth, treasury))
    assert cfg.authority == str(auth)
    assert cfg.treasury == str(treasury)
    assert (cfg.name, cfg.symbol) == ("Sacred Waste", "WASTE")
    assert (cfg.premium_fee, cfg.total_minted, cfg.total_burned, cfg.bump) == (1_000_000, 7, 12345, 254)


def test_decode_collection_config_truncated():
    with pytest.raises(DataError):
        program.decode_collection_config(bytes(20))


def test_verify_treasury_reads_config_pda():
    pid = Keypair().pubkey()
    treasury = Keypair().pubkey()
    rpc = ProgramRpc(config_bytes(Keypair().pubkey(), treasury))
    program.verify_treasury(rpc, pid, treasury)
    expected, _ = Pubkey.find_program_address([b"collection_config"], pid)
    assert rpc.asked == [str(expected)]


def test_verify_treasury_mismatch_and_missing():
    pid = Keypair().pubkey()
    with pytest.raises(ConfigError, match="treasury"):
        program.verify_treasury(ProgramRpc(config_bytes(Keypair().pubkey(), Keypair().pubkey())), pid, Keypair().pubkey())
    with pytest.raises(ConfigError, match="does not exist"):
        program.verify_treasury(ProgramRpc(None), pid, Keypair().pubkey())
