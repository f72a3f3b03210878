#!/usr/bin/env python3
"""
orderbridge API Startup Script

Starts the orderbridge FastAPI server (order webhooks, visitor tracking, admin).
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the orderbridge API server."""
    print("Starting orderbridge API Server...")
    print("   Order webhooks:   POST /wix/orders/webhook")
    print("   Visitor tracking: POST /track/session")
    print("   Admin:            /admin/* (X-Admin-Key)")
    print("   Swagger UI:       http://localhost:8000/docs")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   MARKETIN_API_KEY=your-marketin-key")
        print("   TOKEN_ENCRYPTION_KEY=<Fernet key>")
        print("")

    try:
        uvicorn.run(
            "orderbridge.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["orderbridge"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down orderbridge API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
