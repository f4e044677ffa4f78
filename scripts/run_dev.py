#!/usr/bin/env python3
"""
Development server runner for the ProofSnap API
Checks the environment and starts uvicorn with auto-reload
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

REQUIRED_VARS_BY_BACKEND = {
    ("STORAGE_BACKEND", "ipfs"): ["PINATA_JWT"],
    ("STORAGE_BACKEND", "gcs"): ["GCS_BUCKET_NAME"],
    ("INDEX_BACKEND", "postgres"): ["INDEX_DB_DSN"],
    ("LEDGER_BACKEND", "web3"): ["LEDGER_RPC_URL", "LEDGER_CONTRACT_ADDRESS"],
}

DEFAULT_BACKENDS = {"STORAGE_BACKEND": "ipfs", "INDEX_BACKEND": "postgres", "LEDGER_BACKEND": "web3"}


def check_environment():
    """Check that the selected backends have their settings."""
    missing_vars = []
    for (selector, backend), required in REQUIRED_VARS_BY_BACKEND.items():
        if os.getenv(selector, DEFAULT_BACKENDS[selector]) != backend:
            continue
        missing_vars.extend(var for var in required if not os.getenv(var))

    if missing_vars:
        print(f"Missing environment variables: {', '.join(missing_vars)}")
        print("Set them in .env, or pick the memory/local backends for development.")
        return False

    print("Backends:")
    for selector, default in DEFAULT_BACKENDS.items():
        print(f"  {selector}: {os.getenv(selector, default)}")
    return True


def main():
    """Main entry point for development server."""
    print("ProofSnap - Development Server")
    print("=" * 50)

    if not check_environment():
        sys.exit(1)

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "true").lower() == "true"

    print(f"Docs: http://{host}:{port}/docs")
    print("=" * 50)

    try:
        uvicorn.run(
            "proofsnap.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()
