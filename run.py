#!/usr/bin/env python3
"""
EMI Ledger Entry Point

Starts the FastAPI server with the EMI ledger system.
"""

import sys

from emi_ledger.api import run_server
from emi_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting EMI Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down EMI Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
