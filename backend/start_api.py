#!/usr/bin/env python3
"""
Metricus API Startup Script

Starts the Google Ads ingestion FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the Metricus API server."""
    print("Starting Metricus Google Ads API...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   Selftest:    http://localhost:8000/diag/ping?selftest=1")
    print("")

    # Check for environment file
    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Required: GOOGLE_OAUTH_CLIENT_ID, GOOGLE_OAUTH_CLIENT_SECRET, GOOGLE_OAUTH_REDIRECT_URI,")
        print("             GOOGLE_ADS_DEVELOPER_TOKEN, DATABASE_URL, SUPABASE_SERVICE_ROLE_KEY,")
        print("             METRICUS_INGEST_KEY, SUPABASE_JWT_SECRET, TOKEN_ENCRYPTION_KEY")
        print("")

    try:
        uvicorn.run(
            "metricus.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["metricus"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down Metricus API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
