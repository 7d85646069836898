#!/usr/bin/env python3
"""
Loan Back Office Entry Point

Starts the FastAPI server with the loan back office API. Host, port and the
record store location come from LOAN_BACKOFFICE_* environment variables.
"""

import sys

from loan_backoffice.api import run_server
from loan_backoffice.config import get_config


if __name__ == "__main__":
    config = get_config()
    store = config.record_store_url or "in-memory store"
    print("Starting Loan Back Office...")
    print(f"Record store: {store}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Back Office...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
