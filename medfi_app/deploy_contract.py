# medfi_app/deploy_contract.py

import json
import logging
import os
import sys

from dotenv import load_dotenv
from web3 import Web3

load_dotenv()

logger = logging.getLogger(__name__)

# --- Configuration ---
COMPILED_CONTRACT_FILE = os.getenv("COMPILED_CONTRACT_FILE", "compiled_contract.json")
ENV_FILE = ".env"  # To remind user which file to update
DEPLOYMENT_GAS_FALLBACK = 3000000
# --- End Configuration ---


def load_compiled(path):
    """Returns (abi, bytecode, contract_name) or None."""
    if not os.path.exists(path):
        logger.error("Compiled file not found at %s. Run medfi-compile first.", path)
        return None
    try:
        with open(path, "r") as f:
            compiled_data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Error loading compiled contract file '%s': %s", path, e)
        return None
    abi = compiled_data.get("abi")
    bytecode = compiled_data.get("bytecode")
    if not abi or not bytecode:
        logger.error("ABI or Bytecode missing in compiled file.")
        return None
    return abi, bytecode, compiled_data.get("contractName", "Unknown")


def deploy_contract(node_uri=None, deployer_key=None, compiled_file=COMPILED_CONTRACT_FILE, w3=None):
    """Deploys the compiled contract. Returns the contract address or None."""
    node_uri = node_uri or os.getenv("BLOCKCHAIN_NODE_URI")
    deployer_key = deployer_key or os.getenv("DEPLOYER_PRIVATE_KEY")
    logger.info("Attempting to deploy contract...")

    # --- Basic Input Validation ---
    if not node_uri and w3 is None:
        logger.error("BLOCKCHAIN_NODE_URI not set in .env")
        return None
    if not deployer_key or not deployer_key.startswith("0x"):
        logger.error("DEPLOYER_PRIVATE_KEY not set correctly (must start with 0x) in .env")
        return None
    compiled = load_compiled(compiled_file)
    if compiled is None:
        return None
    abi, bytecode, contract_name = compiled
    logger.info("Loaded ABI and Bytecode for '%s'", contract_name)

    # --- Connect to Blockchain ---
    w3 = w3 or Web3(Web3.HTTPProvider(node_uri))
    try:
        if not w3.is_connected():
            logger.error("Failed to connect to blockchain node at %s", node_uri)
            return None
        deployer_address = w3.eth.account.from_key(deployer_key).address
    except ValueError as e:
        logger.error("Invalid DEPLOYER_PRIVATE_KEY format: %s", e)
        return None
    except Exception as e:
        logger.error("Error connecting to blockchain or setting up account: %s", e)
        return None
    logger.info("Using deployer account: %s", deployer_address)

    balance = w3.eth.get_balance(deployer_address)
    logger.info("Deployer balance: %s ETH", w3.from_wei(balance, "ether"))
    if balance == 0:
        logger.error("Deployer account has zero balance. Deployment cannot proceed.")
        return None

    # --- Deploy Contract ---
    try:
        factory = w3.eth.contract(abi=abi, bytecode=bytecode)
        gas_limit = DEPLOYMENT_GAS_FALLBACK
        try:
            gas_estimate = factory.constructor().estimate_gas({"from": deployer_address})
            gas_limit = int(gas_estimate * 1.2)  # Add buffer
        except Exception as e:
            if "invalid opcode" in str(e) or "execution reverted" in str(e):
                # EVM incompatibility (node hard fork vs solc version) or constructor error
                logger.error("Fatal error during gas estimation: %s", e)
                return None
            logger.warning("Could not estimate deployment gas: %s. Using default limit: %s", e, gas_limit)

        tx_params = {
            "from": deployer_address,
            "nonce": w3.eth.get_transaction_count(deployer_address),
            "gasPrice": w3.eth.gas_price,
            "gas": gas_limit,
        }
        unsigned_tx = factory.constructor().build_transaction(tx_params)
        signed_tx = w3.eth.account.sign_transaction(unsigned_tx, private_key=deployer_key)
        tx_hash = w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info("Deployment transaction sent! Hash: %s", w3.to_hex(tx_hash))

        tx_receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=240)
    except Exception as e:
        logger.error("Deployment failed: %s", e)
        return None

    contract_address = tx_receipt.get("contractAddress")
    if not contract_address:
        logger.error("Deployment transaction succeeded but no contract address found in receipt: %s", tx_receipt)
        return None

    logger.info("Contract deployed at %s (block %s, gas used %s)",
                contract_address, tx_receipt.get("blockNumber"), tx_receipt.get("gasUsed"))
    return contract_address


def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    deployed_address = deploy_contract()
    if not deployed_address:
        print("Deployment failed.")
        sys.exit(1)
    print("-" * 60)
    print(f"IMPORTANT: Update your {ENV_FILE} file with:")
    print(f"CONTRACT_ADDRESS={deployed_address}")
    print("-" * 60)


if __name__ == "__main__":
    main()
