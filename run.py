#!/usr/bin/env python3
"""
Account Ledger Entry Point

Starts the FastAPI server with the account store named by LEDGER_DATABASE_URL.
"""

import sys

from account_ledger.api import run_server
from account_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Account Ledger...")
    print(f"Store: {config.database_url}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Account Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
