#!/usr/bin/env python3
"""AIrWAVE render service.

Launch: python3 run_server.py
Serves at http://0.0.0.0:8000 (or PORT env var)
"""

import logging

import uvicorn

from airwave.config import (
    CREATOMATE_API_KEY, HOST, LOG_LEVEL, PORT, PROTOTYPE_MODE, SUPABASE_URL,
)


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("=" * 60)
    print("  AIrWAVE — Render Service")
    print("=" * 60)

    if not SUPABASE_URL:
        print("\n  WARNING: SUPABASE_URL not set. Set environment variables:")
        print("    SUPABASE_URL, SUPABASE_SERVICE_KEY")
        print("  Continuing anyway for local development...\n")
    if PROTOTYPE_MODE:
        print("  PROTOTYPE_MODE: renders are mocked, Creatomate is never called")
    elif not CREATOMATE_API_KEY:
        print("  WARNING: CREATOMATE_API_KEY not set; every render will fail")

    print(f"\n  Starting server on {HOST}:{PORT}")
    print("  Press Ctrl+C to stop\n")

    from airwave.app import create_app
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
