#!/usr/bin/env python3
"""
Credit Ledger Service Entry Point

Starts the FastAPI server with the configured account store.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from credit_ledger.api import run_server
from credit_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Credit Ledger Service...")
    print(f"Storage backend: {config.storage_type}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print()
    
    try:
        run_server(config)
    except KeyboardInterrupt:
        print("\nShutting down Credit Ledger Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
