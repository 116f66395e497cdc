#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server with the loan engine. Host, port, storage and
logging come from LOAN_ENGINE_* environment variables or a .env file.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_engine.api import run_server
from loan_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Engine...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
