#!/usr/bin/env python3
"""
Funnel Tracking API Startup Script

Starts the tracking FastAPI server (funnel steps -> Meta Conversions API).
"""

import os
import sys
from pathlib import Path

import uvicorn


def main():
    """Start the tracking API server."""
    port = int(os.getenv("PORT", "8000"))

    print("🚀 Starting Funnel Tracking API...")
    print("📊 Features:")
    print("   ✅ UTM attribution per funnel session")
    print("   ✅ Event deduplication (browser pixel + server)")
    print("   ✅ Meta Conversions API delivery with retries")
    print("")
    print("📖 Documentation will be available at:")
    print(f"   🌐 Swagger UI:  http://localhost:{port}/docs")
    print(f"   📚 ReDoc:       http://localhost:{port}/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Events will be tracked but not delivered until these are set:")
        print("   FACEBOOK_PIXEL_ID=your-pixel-id")
        print("   FACEBOOK_ACCESS_TOKEN=your-system-user-token")
        print("")

    try:
        uvicorn.run(
            "app.main:app",
            host="0.0.0.0",
            port=port,
            reload=True,
            reload_dirs=["app"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down tracking API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
