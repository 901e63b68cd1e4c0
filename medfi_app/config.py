# medfi_app/config.py

import json
import logging
import os

from dotenv import load_dotenv

# Load variables from .env into the process environment (no-op if absent)
load_dotenv()

logger = logging.getLogger(__name__)

# --- Defaults ---
DEFAULT_GATEWAYS = (
    "https://gateway.pinata.cloud/ipfs/",
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://dweb.link/ipfs/",
)
PINATA_PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"


def _env_list(name, default):
    """Comma-separated env var -> list of non-empty, stripped items."""
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name, default):
    raw = os.getenv(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def load_contract_abi(path):
    """Reads the ABI out of the compiled contract JSON. Returns None if missing/broken."""
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path, "r") as f:
            return json.load(f).get("abi")
    except (OSError, ValueError) as e:
        logger.error("Could not load contract ABI from %s: %s", path, e)
        return None


class Config:
    """Application settings, read once from the environment / .env file."""

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # --- Blockchain ---
    BLOCKCHAIN_NODE_URI = os.getenv("BLOCKCHAIN_NODE_URI")
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    COMPILED_CONTRACT_FILE = os.getenv("COMPILED_CONTRACT_FILE", "compiled_contract.json")
    CONTRACT_ABI = load_contract_abi(COMPILED_CONTRACT_FILE)
    TX_RECEIPT_TIMEOUT = _env_float("TX_RECEIPT_TIMEOUT", 180.0)
    # "owner" -> list only the connected account's records; "shared" -> everyone's
    RECORD_SCOPE = os.getenv("RECORD_SCOPE", "owner")

    # --- Pinata / IPFS ---
    PINATA_API_KEY = os.getenv("PINATA_API_KEY")
    PINATA_SECRET_API_KEY = os.getenv("PINATA_SECRET_API_KEY")
    PINATA_API_URL = os.getenv("PINATA_API_URL", PINATA_PIN_FILE_URL)
    PINATA_TIMEOUT = _env_float("PINATA_TIMEOUT", 120.0)
    # Optional: upload through a running /api/upload ingress instead of Pinata directly
    CONTENT_STORE_URL = os.getenv("CONTENT_STORE_URL")
    IPFS_GATEWAYS = _env_list("IPFS_GATEWAYS", DEFAULT_GATEWAYS)
    IPFS_GATEWAY_TIMEOUT = _env_float("IPFS_GATEWAY_TIMEOUT", 10.0)
    VERIFY_INTEGRITY = _env_bool("VERIFY_INTEGRITY", True)

    # --- Client-local state (hidden records, last upload token); empty keeps it in memory ---
    CLIENT_STATE_FILE = os.getenv("CLIENT_STATE_FILE", "client_state.json")

    @classmethod
    def startup_warnings(cls):
        """Lists configuration gaps that will make parts of the app fail."""
        warnings = []
        if not cls.BLOCKCHAIN_NODE_URI:
            warnings.append("BLOCKCHAIN_NODE_URI not set in .env.")
        if not cls.CONTRACT_ADDRESS:
            warnings.append("CONTRACT_ADDRESS not set in .env (run medfi-deploy first).")
        if not cls.CONTRACT_ABI:
            warnings.append(f"Contract ABI not found in {cls.COMPILED_CONTRACT_FILE} (run medfi-compile first).")
        if not cls.CONTENT_STORE_URL and (not cls.PINATA_API_KEY or not cls.PINATA_SECRET_API_KEY):
            warnings.append("Pinata keys not set (file uploads will fail).")
        if len(cls.IPFS_GATEWAYS) < 2:
            warnings.append("Fewer than 2 IPFS gateways configured; retrieval has no fallback.")
        if cls.RECORD_SCOPE not in ("owner", "shared"):
            warnings.append(f"RECORD_SCOPE={cls.RECORD_SCOPE!r} is not 'owner' or 'shared'.")
        return warnings


def configure_logging(level=None):
    """Single stream handler on the root logger; safe to call more than once."""
    level = level or Config.LOG_LEVEL
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)
