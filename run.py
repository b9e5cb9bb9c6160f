"""
ShareTrack - Quick Start Script
Run this to start the development server
"""

import uvicorn
from app.config import settings

if __name__ == "__main__":
    print("=" * 60)
    print(f"Starting {settings.APP_NAME} API Server")
    print("=" * 60)
    print(f"Environment: {settings.ENVIRONMENT}")
    print(f"Server: http://{settings.HOST}:{settings.PORT}")
    print(f"Database: {settings.DATABASE_URL.split('@')[-1]}")
    print(f"Presence socket: ws://{settings.HOST}:{settings.PORT}{settings.API_V1_PREFIX}/presence/ws?token=...")
    print("=" * 60)
    print("\nPress CTRL+C to stop\n")

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
