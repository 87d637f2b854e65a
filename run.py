#!/usr/bin/env python3
"""
Finance Core Entry Point

Starts the FastAPI server with the finance back-office (ledger, period close,
cash and Cari subledger). Host, port and storage come from FINCORE_* settings.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from finance_core.api_modular import run_server
from finance_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Finance Core...")
    print(f"Storage: {config.database_url}")
    print(f"Cash control mode: {config.cash_control_mode}")
    print(f"API available at: http://{config.api_host}:{config.api_port}{config.api_prefix}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Finance Core...")
