#!/usr/bin/env python3
"""
Startup script for the Reading Strategy Bandit

This script starts the FastAPI server with proper configuration
and handles environment setup.
"""

import sys
from pathlib import Path

import uvicorn

project_root = Path(__file__).parent


def main():
    """Start the FastAPI server."""
    print("Reading Strategy Bandit - Starting Server")
    print("=" * 50)

    # Check if .env file exists
    env_file = project_root / ".env"
    if not env_file.exists():
        print("No .env file found. Creating from example...")
        example_file = project_root / "env_example.txt"
        if example_file.exists():
            env_file.write_text(example_file.read_text())
            print("Created .env file from example")
        else:
            print("No env_example.txt found. Using default settings.")

    # Import after setting up environment
    try:
        from config.settings import get_settings, validate_settings
        settings = get_settings()
        validate_settings(settings)

        print("Configuration loaded successfully")
        print(f"  - Storage backend: {settings.storage_backend}")
        print(f"  - API Host: {settings.api_host}")
        print(f"  - API Port: {settings.api_port}")
        print(f"  - Debug Mode: {settings.debug}")
        print(f"  - Log Level: {settings.log_level}")

    except Exception as e:
        print(f"Failed to load configuration: {e}")
        print("Using default settings...")

        host = "0.0.0.0"
        port = 8000
        debug = True
        log_level = "info"
    else:
        host = settings.api_host
        port = settings.api_port
        debug = settings.debug
        log_level = settings.log_level.lower()

    print(f"\nStarting server on {host}:{port}")
    print("Press Ctrl+C to stop the server")
    print("=" * 50)

    try:
        uvicorn.run(
            "api.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level=log_level,
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n\nServer stopped by user")
    except Exception as e:
        print(f"\nFailed to start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
