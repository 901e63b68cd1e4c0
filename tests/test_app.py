import io

import pytest
import requests

from conftest import (
    LEGACY_REF,
    OTHER_ADDRESS,
    TEST_ADDRESS,
    TEST_PRIVATE_KEY,
    FakeLedger,
    FakeResponse,
    FakeSession,
    FakeStore,
    ledger_entry,
)
from medfi_app.app import Services, build_services, create_app
from medfi_app.config import Config
from medfi_app.errors import ContentStoreUnreachable
from medfi_app.events import RefreshChannel
from medfi_app.records import RecordService
from medfi_app.retrieval import RetrievalResolver
from medfi_app.storage import HiddenRecords, LastUploadToken, MemoryStore
from medfi_app.upload import UploadCoordinator

G1 = "https://g1.example/ipfs/"
G2 = "https://g2.example/ipfs/"


class AppTestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    LOG_LEVEL = "WARNING"


def build(ledger=None, store=None, routes=None, head_routes=None):
    ledger = ledger or FakeLedger(managers={TEST_ADDRESS})
    store = store or FakeStore()
    client_state = MemoryStore()
    last_upload = LastUploadToken(client_state)
    refresh = RefreshChannel()
    return Services(
        ledger=ledger,
        pinata=store,
        store=store,
        resolver=RetrievalResolver([G1, G2], session=FakeSession(routes or {}, head_routes or {})),
        records=RecordService(ledger),
        hidden=HiddenRecords(client_state),
        last_upload=last_upload,
        refresh=refresh,
        coordinator=UploadCoordinator(ledger, store, refresh=refresh, last_upload=last_upload,
                                      clock=lambda: "2025-05-01T12:00:00.000Z"),
    )


@pytest.fixture()
def services():
    return build()


@pytest.fixture()
def client(services):
    app = create_app(AppTestConfig, services_override=services)
    return app.test_client()


@pytest.fixture()
def connected(client):
    response = client.post("/wallet/connect", data={"private_key": TEST_PRIVATE_KEY})
    assert response.status_code == 200
    return client


def upload(client, symptoms="fever", diagnosis="flu", data=b"%PDF-1.4", filename="a.pdf"):
    return client.post(
        "/upload_record",
        data={"symptoms": symptoms, "diagnosis": diagnosis,
              "record_file": (io.BytesIO(data), filename)},
        content_type="multipart/form-data",
    )


def test_index_reports_wallet_and_connection(client):
    body = client.get("/").get_json()
    assert body["connection_ok"] is True
    assert body["wallet"] == {"status": "disconnected", "address": None}


def test_connect_and_poll_status(connected):
    body = connected.get("/api/wallet/status").get_json()
    assert body["wallet"] == {"status": "connected", "address": TEST_ADDRESS}


def test_connect_with_bad_key(client):
    response = client.post("/wallet/connect", data={"private_key": "nope"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "validation"
    assert client.get("/api/wallet/status").get_json()["wallet"]["status"] == "disconnected"


def test_disconnect_clears_session(connected):
    connected.post("/wallet/disconnect")
    response = connected.get("/api/records")
    assert response.status_code == 401
    assert response.get_json()["error"] == "wallet"


def test_upload_requires_wallet(client):
    assert upload(client).status_code == 401


def test_upload_record_then_list(connected, services):
    seen = []
    services.refresh.subscribe(seen.append)

    response = upload(connected)
    assert response.status_code == 201
    body = response.get_json()
    assert body["record"]["content_ref"] == "QmAbc123"
    assert body["fileName"] == "a.pdf"
    assert body["initialized"] is False
    assert seen == ["2025-05-01T12:00:00.000Z"]

    records = connected.get("/api/records").get_json()
    assert [r["content_ref"] for r in records["records"]] == ["QmAbc123"]
    assert records["hasHiddenRecords"] is False
    assert connected.get("/api/refresh_token").get_json() == {"lastUpload": "2025-05-01T12:00:00.000Z"}


def test_upload_missing_fields_is_bad_request(connected, services):
    response = upload(connected, symptoms="")
    assert response.status_code == 400
    assert services.ledger.submits == []


def test_upload_store_unreachable_maps_to_gateway_timeout():
    services = build(store=FakeStore(error=ContentStoreUnreachable("refused")))
    app = create_app(AppTestConfig, services_override=services)
    client = app.test_client()
    client.post("/wallet/connect", data={"private_key": TEST_PRIVATE_KEY})
    response = upload(client)
    assert response.status_code == 504
    assert response.get_json()["error"] == "content_store_unreachable"


def test_stats(connected, services):
    services.ledger.entries.extend([
        ledger_entry(TEST_ADDRESS, "QmA", date="2025-01-01T00:00:00.000Z"),
        ledger_entry(TEST_ADDRESS, "QmB", date="2025-03-01T00:00:00.000Z"),
    ])
    body = connected.get("/api/stats").get_json()
    assert body["account"] == {"totalRecords": 2, "lastUploadDate": "2025-03-01T00:00:00.000Z"}
    assert body["global"] == {"totalRecords": 2, "totalAccounts": 1}


def test_hide_and_show_records(connected, services):
    services.ledger.entries.extend([
        ledger_entry(TEST_ADDRESS, "QmA"),
        ledger_entry(TEST_ADDRESS, LEGACY_REF),
    ])
    assert connected.post(f"/api/records/{LEGACY_REF}/hide").status_code == 409
    assert connected.post("/api/records/QmA/hide").status_code == 200

    body = connected.get("/api/records").get_json()
    assert [r["content_ref"] for r in body["records"]] == [LEGACY_REF]
    assert body["hasHiddenRecords"] is True

    assert connected.post("/api/records/hide_legacy").get_json()["hiddenCount"] == 1
    assert connected.post("/api/records/hide_legacy").get_json()["hiddenCount"] == 0
    assert connected.get("/api/records").get_json()["records"] == []

    connected.post("/api/records/show_all")
    assert len(connected.get("/api/records").get_json()["records"]) == 2


def test_view_record_streams_bytes():
    services = build(routes={G1: FakeResponse(200, b"%PDF-1.4", {"Content-Type": "application/pdf"})})
    client = create_app(AppTestConfig, services_override=services).test_client()
    response = client.get("/view_record/QmAbc12345")
    assert response.status_code == 200
    assert response.data == b"%PDF-1.4"
    assert response.mimetype == "application/pdf"
    assert response.headers["X-IPFS-Gateway"] == G1
    assert "Content-Disposition" not in response.headers

    download = client.get("/view_record/QmAbc12345?download=1")
    assert download.headers["Content-Disposition"] == 'attachment; filename="medical_record_QmAbc123.pdf"'


def test_view_legacy_record_is_gone(client):
    response = client.get(f"/view_record/{LEGACY_REF}")
    assert response.status_code == 410
    assert response.get_json()["error"] == "legacy_format"


def test_view_record_exhausted():
    services = build(routes={G1: FakeResponse(404), G2: requests.exceptions.Timeout("slow")})
    client = create_app(AppTestConfig, services_override=services).test_client()
    response = client.get("/view_record/QmAbc123")
    assert response.status_code == 503
    assert response.get_json()["error"] == "retrieval_exhausted"


def test_validate_reports_each_gateway():
    services = build(head_routes={G1: FakeResponse(404), G2: FakeResponse(200)})
    client = create_app(AppTestConfig, services_override=services).test_client()
    body = client.get("/api/validate/QmAbc123").get_json()
    assert body["isValid"] is True
    assert body["gateways"] == {G1: {"status": 404}, G2: {"status": 200}}


def test_ingress_upload(client, services):
    response = client.post(
        "/api/upload",
        data={"file": (io.BytesIO(b"bytes"), "scan.png")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    assert response.get_json() == {"contentId": "QmAbc123", "fileName": "a.pdf"}
    assert services.pinata.calls == [("scan.png", b"bytes")]


def test_ingress_upload_without_file(client):
    response = client.post("/api/upload", data={}, content_type="multipart/form-data")
    assert response.status_code == 400


def test_status_poll_drops_stale_recorded_account(client):
    with client.session_transaction() as sess:
        sess["wallet"] = {"status": "connected", "address": OTHER_ADDRESS}
        sess["wallet_key"] = TEST_PRIVATE_KEY
    body = client.get("/api/wallet/status").get_json()
    assert body["wallet"] == {"status": "disconnected", "address": None}
    assert client.get("/api/records").status_code == 401


def test_status_poll_picks_up_session_key(client):
    with client.session_transaction() as sess:
        sess["wallet"] = {"status": "disconnected", "address": None}
        sess["wallet_key"] = TEST_PRIVATE_KEY
    body = client.get("/api/wallet/status").get_json()
    assert body["wallet"] == {"status": "connected", "address": TEST_ADDRESS}
    assert client.get("/api/records").status_code == 200


def test_status_poll_with_corrupt_key_disconnects(client):
    with client.session_transaction() as sess:
        sess["wallet"] = {"status": "connected", "address": TEST_ADDRESS}
        sess["wallet_key"] = "0xnot-a-key"
    body = client.get("/api/wallet/status").get_json()
    assert body["wallet"]["status"] == "disconnected"


def test_upload_forwards_file_content_type(connected, services):
    assert upload(connected).status_code == 201
    assert services.store.content_types == ["application/pdf"]


def test_empty_state_file_keeps_client_state_in_memory():
    class MemoryConfig(AppTestConfig):
        BLOCKCHAIN_NODE_URI = None
        CLIENT_STATE_FILE = ""

    services = build_services(MemoryConfig)
    assert isinstance(services.hidden.store, MemoryStore)
    assert services.hidden.store is services.last_upload.store


def test_state_file_setting_persists_client_state(tmp_path):
    class FileConfig(AppTestConfig):
        BLOCKCHAIN_NODE_URI = None
        CLIENT_STATE_FILE = str(tmp_path / "client_state.json")

    services = build_services(FileConfig)
    services.hidden.hide("QmA")
    assert (tmp_path / "client_state.json").exists()
