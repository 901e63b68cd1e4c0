# medfi_app/ledger.py
"""Blockchain access through web3: resource reads, signed submits, finality waits.

The RecordManager contract keeps one append-only record sequence. Reading the
resource at the contract's own address returns every record; reading it at an
account address returns that account's records, or raises ResourceNotFound
until the account has called ``initialize``.
"""

import logging
import traceback
from dataclasses import dataclass

from web3 import Web3
from web3.exceptions import TimeExhausted

from medfi_app.errors import (
    LedgerFinalityError,
    LedgerReadError,
    LedgerSubmitError,
    ResourceNotFound,
)

logger = logging.getLogger(__name__)

RECORD_MANAGER = "RecordManager"
GAS_LIMIT_FALLBACK = 500000  # Default gas limit if estimation fails
GAS_BUFFER = 1.2


@dataclass(frozen=True)
class Finality:
    success: bool
    submission_id: str
    block_number: int = None
    gas_used: int = None


def record_from_chain(values):
    """Contract tuple (clientId, date, symptoms, diagnosis, treatment) -> dict."""
    return {
        "client_id": values[0],
        "date": values[1],
        "symptoms": values[2],
        "diagnosis": values[3],
        "treatment": values[4],
    }


class Web3Ledger:
    """LedgerClient backed by an EVM node and the RecordManager contract."""

    def __init__(self, node_uri, contract_address, contract_abi, receipt_timeout=180, w3=None):
        self.node_uri = node_uri
        self.contract_address = contract_address
        self.contract_abi = contract_abi
        self.receipt_timeout = receipt_timeout
        self.w3 = w3
        self.contract = None

    # --- Connection ---

    def connect(self):
        """
        Connects to the node and builds the contract instance.
        Returns True on success, False on failure.
        """
        logger.info("Attempting to connect to blockchain...")
        if self.w3 is None:
            if not self.node_uri:
                logger.error("BLOCKCHAIN_NODE_URI is not configured.")
                return False
            self.w3 = Web3(Web3.HTTPProvider(self.node_uri))

        try:
            if not self.w3.is_connected():
                logger.error("Failed to connect to blockchain node at %s", self.node_uri)
                return False
            logger.info("Connected to blockchain: %s, Chain ID: %s", self.node_uri, self.w3.eth.chain_id)
        except Exception as e:
            logger.error("Error connecting to blockchain: %s", e)
            return False

        if not self.contract_address:
            # Connection works, but nothing contract-related will until the address is set
            logger.warning("CONTRACT_ADDRESS not set. Blockchain interactions requiring it will fail.")
            return True
        if not self.contract_abi:
            logger.error("Contract ABI not loaded.")
            return False

        try:
            checksum_address = Web3.to_checksum_address(self.contract_address)
        except ValueError as e:
            logger.error("Invalid CONTRACT_ADDRESS format %r: %s", self.contract_address, e)
            return False
        self.contract_address = checksum_address
        self.contract = self.w3.eth.contract(address=checksum_address, abi=self.contract_abi)
        logger.info("Contract instance created for address: %s", checksum_address)
        return True

    def is_connected(self):
        if self.w3 is None or self.contract is None:
            return False
        try:
            return bool(self.w3.is_connected())
        except Exception:
            return False

    def _require_contract(self, error_cls):
        if self.contract is None and self.contract_address:
            # Startup connect may have failed while the node was down
            logger.info("Contract not loaded; retrying blockchain connection...")
            self.connect()
        if self.contract is None:
            raise error_cls("Contract not loaded")
        return self.contract

    # --- Reads ---

    def read_records(self):
        """Every record in the contract, in append order."""
        contract = self._require_contract(LedgerReadError)
        try:
            count = contract.functions.getRecordsCount().call()
            return [record_from_chain(contract.functions.getRecord(i).call()) for i in range(count)]
        except Exception as e:
            logger.error("Error reading records from contract: %s", e)
            raise LedgerReadError(f"Error reading records: {e}", cause=e) from e

    def _checked_address(self, account_address, resource_type):
        if resource_type != RECORD_MANAGER:
            raise LedgerReadError(f"Unknown resource type: {resource_type}")
        try:
            return Web3.to_checksum_address(account_address)
        except ValueError as e:
            raise LedgerReadError(f"Invalid address format: {account_address}", cause=e) from e

    def resource_exists(self, account_address, resource_type=RECORD_MANAGER):
        """Single managerExists call; never reads the record sequence."""
        address = self._checked_address(account_address, resource_type)
        contract = self._require_contract(LedgerReadError)
        if address == self.contract_address:
            return True
        try:
            return bool(contract.functions.managerExists(address).call())
        except Exception as e:
            logger.error("Error calling managerExists for %s: %s", address, e)
            raise LedgerReadError(f"Error reading {resource_type} for {address}: {e}", cause=e) from e

    def read_resource(self, account_address, resource_type=RECORD_MANAGER):
        address = self._checked_address(account_address, resource_type)
        self._require_contract(LedgerReadError)

        if address == self.contract_address:
            # The contract itself holds the shared sequence
            return {"address": address, "records": self.read_records()}

        if not self.resource_exists(address, resource_type):
            raise ResourceNotFound(address, resource_type)

        records = [r for r in self.read_records() if r["client_id"].lower() == address.lower()]
        return {"address": address, "records": records}

    # --- Writes ---

    def submit(self, account, function_id, args):
        """
        Signs and sends ``function_id(*args)`` from ``account``.
        Returns the transaction hash (hex) without waiting for it.
        """
        contract = self._require_contract(LedgerSubmitError)
        try:
            function_call = getattr(contract.functions, function_id)(*args)
        except Exception as e:
            raise LedgerSubmitError(f"Contract function '{function_id}' unavailable: {e}", cause=e) from e

        sender = account.address
        try:
            tx_params = {
                "from": sender,
                "nonce": self.w3.eth.get_transaction_count(sender),
                "gasPrice": self.w3.eth.gas_price,
            }
            try:
                gas_estimate = function_call.estimate_gas({"from": sender})
                tx_params["gas"] = int(gas_estimate * GAS_BUFFER)
                logger.debug("Estimated gas %s, using limit %s", gas_estimate, tx_params["gas"])
            except Exception as e:
                logger.warning("Could not estimate gas for %s: %s. Using default limit: %s",
                               function_id, e, GAS_LIMIT_FALLBACK)
                tx_params["gas"] = GAS_LIMIT_FALLBACK

            transaction = function_call.build_transaction(tx_params)
            signed_tx = self.w3.eth.account.sign_transaction(transaction, account.private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception as e:
            message = str(e)
            if "insufficient funds" in message.lower():
                message = f"Insufficient funds in account {sender[:6]}... to pay for transaction gas."
            elif "nonce too low" in message or "replacement transaction underpriced" in message:
                message = f"Nonce or gas price issue for {sender[:6]}...: {e}"
            logger.error("Transaction %s from %s failed to submit: %s", function_id, sender, e)
            logger.debug(traceback.format_exc())
            raise LedgerSubmitError(message, cause=e) from e

        tx_hex = self.w3.to_hex(tx_hash)
        logger.info("Transaction %s sent! Hash: %s", function_id, tx_hex)
        return tx_hex

    def wait_for_finality(self, submission_id):
        if self.w3 is None:
            raise LedgerFinalityError("Web3 not connected", submission_id=submission_id)
        logger.info("Waiting for transaction confirmation: %s", submission_id)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(submission_id, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise LedgerFinalityError(
                f"Transaction {submission_id} not confirmed within {self.receipt_timeout}s",
                submission_id=submission_id, cause=e,
            ) from e
        except Exception as e:
            raise LedgerFinalityError(f"Error waiting for {submission_id}: {e}",
                                      submission_id=submission_id, cause=e) from e

        success = receipt["status"] == 1
        if success:
            logger.info("Transaction confirmed! Block: %s, Gas Used: %s", receipt["blockNumber"], receipt["gasUsed"])
        else:
            logger.warning("Transaction failed! Tx Hash: %s", submission_id)
        return Finality(success, submission_id, receipt["blockNumber"], receipt["gasUsed"])
