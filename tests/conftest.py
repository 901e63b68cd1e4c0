import base64
import hashlib

import pytest
import requests

from medfi_app.errors import ResourceNotFound
from medfi_app.ledger import Finality
from medfi_app.pinning import PinResult
from medfi_app.wallet import WalletAccount

# Hardhat / Anvil default account #0
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
OTHER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

LEGACY_REF = hashlib.sha256(b"old upload").hexdigest()


def raw_cid(data):
    """CIDv1 (raw codec, sha2-256, base32) for ``data``."""
    multihash = bytes([0x12, 0x20]) + hashlib.sha256(data).digest()
    encoded = base64.b32encode(bytes([0x01, 0x55]) + multihash).decode("ascii")
    return "b" + encoded.lower().rstrip("=")


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, json_data=None, reason=""):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self._json = json_data
        self.reason = reason

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stands in for requests.Session; answers by URL prefix and records calls."""

    def __init__(self, routes=None, head_routes=None):
        self.routes = routes or {}
        self.head_routes = head_routes if head_routes is not None else {}
        self.calls = []

    @staticmethod
    def _answer(table, url):
        for prefix, outcome in table.items():
            if url.startswith(prefix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise requests.exceptions.ConnectionError(f"no route for {url}")

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._answer(self.routes, url)

    def head(self, url, **kwargs):
        self.calls.append(("HEAD", url, kwargs))
        return self._answer(self.head_routes, url)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._answer(self.routes, url)


class FakeLedger:
    """In-memory RecordManager with the LedgerClient interface."""

    contract_address = CONTRACT_ADDRESS

    def __init__(self, managers=(), entries=None, read_error=None, submit_error=None,
                 failing_functions=(), create_on_failed_init=False):
        self.managers = set(managers)
        self.entries = list(entries or [])
        self.read_error = read_error
        self.submit_error = submit_error
        self.failing_functions = set(failing_functions)
        self.create_on_failed_init = create_on_failed_init
        self.submits = []
        self.reads = []
        self._pending = {}

    def is_connected(self):
        return True

    def resource_exists(self, address, resource_type):
        self.reads.append(address)
        if self.read_error is not None:
            raise self.read_error
        return address == self.contract_address or address in self.managers

    def read_resource(self, address, resource_type):
        self.reads.append(address)
        if self.read_error is not None:
            raise self.read_error
        if address == self.contract_address:
            return {"records": list(self.entries)}
        if address not in self.managers:
            raise ResourceNotFound(address, resource_type)
        return {"records": [e for e in self.entries if e["client_id"] == address]}

    def submit(self, account, function_id, args):
        self.submits.append((function_id, list(args)))
        if self.submit_error is not None:
            raise self.submit_error
        submission_id = f"0x{len(self.submits):064x}"
        self._pending[submission_id] = (function_id, account, list(args))
        return submission_id

    def wait_for_finality(self, submission_id):
        function_id, account, args = self._pending.pop(submission_id)
        if function_id in self.failing_functions:
            if function_id == "initialize" and self.create_on_failed_init:
                # Someone else initialized between our read and our submit
                self.managers.add(account.address)
            return Finality(False, submission_id)
        if function_id == "initialize":
            self.managers.add(account.address)
        elif function_id == "addRecord":
            client_id, date, symptoms, diagnosis, treatment = args
            self.entries.append({
                "client_id": client_id,
                "date": date,
                "symptoms": symptoms,
                "diagnosis": diagnosis,
                "treatment": treatment,
            })
        return Finality(True, submission_id, block_number=1, gas_used=21000)

    def submit_count(self, function_id=None):
        return len([s for s in self.submits if function_id is None or s[0] == function_id])


class FakeStore:
    def __init__(self, content_id="QmAbc123", file_name="a.pdf", error=None):
        self.content_id = content_id
        self.file_name = file_name
        self.error = error
        self.calls = []
        self.content_types = []

    def pin_file(self, filename, data, content_type=None):
        self.calls.append((filename, data))
        self.content_types.append(content_type)
        if self.error is not None:
            raise self.error
        return PinResult(self.content_id, self.file_name)


def ledger_entry(client_id, content_ref, date="2025-01-01T00:00:00.000Z", symptoms="cough", diagnosis="cold"):
    return {"client_id": client_id, "date": date, "symptoms": symptoms,
            "diagnosis": diagnosis, "treatment": content_ref}


@pytest.fixture()
def account():
    return WalletAccount.from_key(TEST_PRIVATE_KEY)


@pytest.fixture()
def fixed_clock():
    return lambda: "2025-05-01T12:00:00.000Z"


