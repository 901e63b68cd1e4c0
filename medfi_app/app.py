# medfi_app/app.py

import logging
from dataclasses import dataclass

from flask import Blueprint, Flask, Response, current_app, jsonify, request, session

from medfi_app.config import Config, configure_logging
from medfi_app.content_ref import is_ipfs_hash
from medfi_app.errors import MedfiError, ValidationError
from medfi_app.events import RefreshChannel
from medfi_app.ledger import Web3Ledger
from medfi_app.pinning import IngressStore, PinataStore
from medfi_app.records import RecordService
from medfi_app.retrieval import RetrievalResolver
from medfi_app.storage import HiddenRecords, JsonFileStore, LastUploadToken, MemoryStore
from medfi_app.upload import UploadCoordinator, UploadFile
from medfi_app.wallet import WalletAccount, WalletHolder, WalletState

logger = logging.getLogger(__name__)

# Error kind -> HTTP status
ERROR_STATUS = {
    "validation": 400,
    "wallet": 401,
    "resource_not_found": 404,
    "legacy_format": 410,
    "initialization": 502,
    "content_store_rejected": 502,
    "ledger_submit": 502,
    "ledger_finality": 502,
    "integrity_mismatch": 502,
    "ledger_read": 503,
    "retrieval_exhausted": 503,
    "content_store_unreachable": 504,
}


@dataclass
class Services:
    ledger: object
    pinata: object
    store: object
    resolver: RetrievalResolver
    records: RecordService
    hidden: HiddenRecords
    last_upload: LastUploadToken
    refresh: RefreshChannel
    coordinator: UploadCoordinator


def build_services(config=Config):
    """Wires the workflow objects from configuration."""
    ledger = Web3Ledger(
        config.BLOCKCHAIN_NODE_URI,
        config.CONTRACT_ADDRESS,
        config.CONTRACT_ABI,
        receipt_timeout=config.TX_RECEIPT_TIMEOUT,
    )
    if not ledger.connect():
        logger.warning("Initial blockchain connection failed; it will be retried on the next blockchain call.")

    pinata = PinataStore(
        config.PINATA_API_KEY,
        config.PINATA_SECRET_API_KEY,
        config.PINATA_API_URL,
        timeout=config.PINATA_TIMEOUT,
    )
    store = IngressStore(config.CONTENT_STORE_URL, config.PINATA_TIMEOUT) if config.CONTENT_STORE_URL else pinata

    if config.CLIENT_STATE_FILE:
        client_state = JsonFileStore(config.CLIENT_STATE_FILE)
    else:
        # Hidden set and last-upload token last only as long as the process
        client_state = MemoryStore()
    last_upload = LastUploadToken(client_state)
    refresh = RefreshChannel()
    refresh.subscribe(lambda token: logger.info("New record data available (upload at %s)", token))

    return Services(
        ledger=ledger,
        pinata=pinata,
        store=store,
        resolver=RetrievalResolver(
            config.IPFS_GATEWAYS,
            timeout=config.IPFS_GATEWAY_TIMEOUT,
            verify_integrity=config.VERIFY_INTEGRITY,
        ),
        records=RecordService(ledger, scope=config.RECORD_SCOPE),
        hidden=HiddenRecords(client_state),
        last_upload=last_upload,
        refresh=refresh,
        coordinator=UploadCoordinator(ledger, store, refresh=refresh, last_upload=last_upload),
    )


bp = Blueprint("medfi", __name__)


def services():
    return current_app.extensions["medfi"]


# --- Wallet Session (INSECURE DEMO - DO NOT USE IN PRODUCTION) ---
# WARNING: The signing key lives in the session cookie so the server can sign
# on the user's behalf without a browser wallet extension.

def load_wallet():
    holder = WalletHolder(WalletState.from_dict(session.get("wallet")))
    key = session.get("wallet_key")
    if key and holder.state.connected:
        try:
            holder.account = WalletAccount.from_key(key)
        except ValidationError:
            holder.disconnect()
    return holder


def save_wallet(holder):
    session["wallet"] = holder.state.to_dict()
    if holder.account is not None:
        session["wallet_key"] = holder.account.private_key
    else:
        session.pop("wallet_key", None)


@bp.app_errorhandler(MedfiError)
def handle_workflow_error(error):
    status = ERROR_STATUS.get(error.kind, 500)
    if status >= 500:
        logger.error("%s: %s", error.kind, error.message)
    else:
        logger.info("%s: %s", error.kind, error.message)
    return jsonify(error.to_dict()), status


# --- Basic Routes ---

@bp.route("/")
def index():
    holder = load_wallet()
    return jsonify({
        "connection_ok": services().ledger.is_connected(),
        "wallet": holder.state.to_dict(),
        "warnings": current_app.config.get("STARTUP_WARNINGS", []),
    })


@bp.route("/wallet/connect", methods=["POST"])
def wallet_connect():
    holder = load_wallet()
    try:
        holder.connect(request.form.get("private_key", ""))
    finally:
        save_wallet(holder)
    return jsonify({"wallet": holder.state.to_dict()})


@bp.route("/wallet/disconnect", methods=["POST"])
def wallet_disconnect():
    holder = load_wallet()
    holder.disconnect()
    session.clear()
    return jsonify({"wallet": holder.state.to_dict()})


@bp.route("/api/wallet/status")
def wallet_status():
    """Poll endpoint; runs the same transition as the push-style routes."""
    holder = load_wallet()
    # The session key plays the part of the wallet; the recorded state may lag it
    key = session.get("wallet_key")

    def probe():
        if not key:
            return False, None
        holder.account = WalletAccount.from_key(key)
        return True, holder.account.address

    holder.poll(probe)
    save_wallet(holder)
    return jsonify({"wallet": holder.state.to_dict()})


# --- Content Store Ingress ---

@bp.route("/api/upload", methods=["POST"])
def api_upload():
    file = request.files.get("file")
    if file is None or file.filename == "":
        return jsonify({"error": "No file uploaded"}), 400
    data = file.read()
    if not data:
        return jsonify({"error": "Uploaded file is empty"}), 400
    pinned = services().pinata.pin_file(file.filename, data, file.mimetype)
    return jsonify({"contentId": pinned.content_id, "fileName": pinned.file_name})


# --- Record Routes ---

@bp.route("/upload_record", methods=["POST"])
def upload_record():
    holder = load_wallet()
    account = holder.require_account()

    file = request.files.get("record_file")
    upload_file = None
    if file is not None and file.filename:
        upload_file = UploadFile(file.filename, file.read(), file.mimetype)

    result = services().coordinator.upload(
        account,
        request.form.get("symptoms", ""),
        request.form.get("diagnosis", ""),
        upload_file,
    )
    return jsonify({
        "message": f"Record uploaded successfully! File: {result.file_name}",
        "record": result.record.to_dict(),
        "fileName": result.file_name,
        "transaction": result.submission_id,
        "initialized": result.initialized,
    }), 201


@bp.route("/api/records")
def api_records():
    account = load_wallet().require_account()
    records = services().records.list_records(account.address)
    visible, has_hidden = services().hidden.apply(records)
    return jsonify({
        "records": [r.to_dict() for r in visible],
        "hasHiddenRecords": has_hidden,
    })


@bp.route("/api/stats")
def api_stats():
    account = load_wallet().require_account()
    return jsonify({
        "account": services().records.account_stats(account.address),
        "global": services().records.global_stats(),
    })


@bp.route("/api/records/<string:content_ref>/hide", methods=["POST"])
def hide_record(content_ref):
    if not is_ipfs_hash(content_ref):
        return jsonify({
            "error": "legacy_format",
            "message": "Old format records cannot be deleted from the blockchain. "
                       "Use \"Hide All Old Format Records\" to hide them from view.",
        }), 409
    services().hidden.hide(content_ref)
    return jsonify({"hidden": content_ref, "message": "Record hidden from view successfully"})


@bp.route("/api/records/hide_legacy", methods=["POST"])
def hide_legacy_records():
    account = load_wallet().require_account()
    records = services().records.list_records(account.address)
    count = services().hidden.hide_legacy(records)
    if count == 0:
        return jsonify({"hiddenCount": 0, "message": "No old format records found to hide."})
    return jsonify({
        "hiddenCount": count,
        "message": f"Hidden {count} old format record(s) from view. New uploads will work correctly.",
    })


@bp.route("/api/records/show_all", methods=["POST"])
def show_all_records():
    services().hidden.show_all()
    return jsonify({"message": "All records are now visible"})


@bp.route("/api/refresh_token")
def refresh_token():
    return jsonify({"lastUpload": services().last_upload.get()})


# --- Retrieval Routes ---

@bp.route("/view_record/<string:content_ref>")
def view_record(content_ref):
    content = services().resolver.resolve(content_ref)
    response = Response(content.data, mimetype=content.content_type)
    response.headers["X-IPFS-Gateway"] = content.gateway
    if request.args.get("download"):
        response.headers["Content-Disposition"] = f'attachment; filename="{content.suggested_filename()}"'
    return response


@bp.route("/api/validate/<string:content_ref>")
def validate_record(content_ref):
    report = services().resolver.validate(content_ref)
    return jsonify(report.to_dict())


def create_app(config_object=Config, services_override=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app.config.get("LOG_LEVEL"))
    app.config["STARTUP_WARNINGS"] = config_object.startup_warnings() if services_override is None else []
    app.extensions["medfi"] = services_override or build_services(config_object)
    app.register_blueprint(bp)
    return app


def main():
    app = create_app()
    warnings = app.config["STARTUP_WARNINGS"]
    if warnings:
        print("\n--- STARTUP WARNINGS ---")
        for warning in warnings:
            print(f"- {warning}")
        print("----------------------\n")
    # Set debug=False for production deployment
    app.run(host="0.0.0.0", port=5000, debug=True)


if __name__ == "__main__":
    main()
