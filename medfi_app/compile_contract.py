# medfi_app/compile_contract.py

import json
import logging
import os
import sys

import solcx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# --- Configuration ---
CONTRACTS_DIR = "contracts"
SOURCE_FILE = os.path.join(CONTRACTS_DIR, "RecordManager.sol")
COMPILED_OUTPUT_FILE = os.getenv("COMPILED_CONTRACT_FILE", "compiled_contract.json")
CONTRACT_NAME = "RecordManager"  # The specific contract we want from the file
# --- End Configuration ---


def select_solc_version(target_version=None):
    """Installs (if needed) and activates a solc version. Returns the version string."""
    installed_versions = solcx.get_installed_solc_versions()
    logger.info("Installed Solc versions: %s", installed_versions)

    if target_version:
        target_version = str(target_version)
        if not any(str(v) == target_version for v in installed_versions):
            logger.info("Installing solc version %s...", target_version)
            solcx.install_solc(target_version)
        solcx.set_solc_version(target_version, silent=True)
    elif installed_versions:
        # Use the latest installed version if none specified
        latest = str(max(installed_versions))
        logger.info("Using latest installed solc version: %s", latest)
        solcx.set_solc_version(latest, silent=True)
    else:
        latest_stable = solcx.get_installable_solc_versions()[0]  # Newest first
        logger.info("No solc installed. Installing latest stable: %s", latest_stable)
        solcx.install_solc(latest_stable)
        solcx.set_solc_version(latest_stable, silent=True)

    return str(solcx.get_solc_version())


def compile_contracts(source_file=SOURCE_FILE, output_file=COMPILED_OUTPUT_FILE,
                      contract_name=CONTRACT_NAME, solc_version=None):
    """Compiles the Solidity contract and saves ABI/Bytecode. Returns True on success."""
    logger.info("Attempting to compile contracts...")
    try:
        current_version = select_solc_version(solc_version or os.getenv("SOLC_VERSION"))
    except Exception as e:
        logger.error("Error setting/installing solc version: %s", e)
        return False

    logger.info("Compiling %s with solc %s...", source_file, current_version)
    try:
        compiled_sol = solcx.compile_files(
            [source_file],
            output_values=["abi", "bin"],
            solc_version=current_version,
        )
    except solcx.exceptions.SolcError as e:
        logger.error("Solidity Compilation Error:\n%s", e)
        return False

    # Keys look like <source_file_path>:<ContractName>, always with forward slashes
    contract_id = f"{source_file.replace(os.sep, '/')}:{contract_name}"
    if contract_id not in compiled_sol:
        logger.error("Contract '%s' not found in compilation output. Available keys: %s",
                     contract_name, list(compiled_sol.keys()))
        return False

    contract_interface = compiled_sol[contract_id]
    abi = contract_interface.get("abi")
    bytecode = contract_interface.get("bin")
    if not abi or not bytecode:
        logger.error("ABI or Bytecode missing in compilation output.")
        return False

    output_data = {"contractName": contract_name, "abi": abi, "bytecode": bytecode}
    with open(output_file, "w") as outfile:
        json.dump(output_data, outfile, indent=4)

    logger.info("Compilation successful. ABI and Bytecode saved to %s", output_file)
    return True


def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    if not compile_contracts():
        print("Compilation failed.")
        sys.exit(1)
    print("Contract compiled successfully.")


if __name__ == "__main__":
    main()
