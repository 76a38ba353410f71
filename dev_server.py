#!/usr/bin/env python3
"""
Local development server for the SignalForge ingestion API.
Run a Celery worker with beat alongside it to drain sync jobs and run the sweeps:

    celery -A signalforge.infrastructure.celery_app:celery_app worker -B
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

# Set local development environment
os.environ.setdefault('APP_ENV', 'dev')
if not os.getenv('DATABASE_URL'):
    print("WARNING: DATABASE_URL not set, using local sqlite file ./signalforge.db")
    print("Run `alembic upgrade head` once to create the schema")

if __name__ == "__main__":
    import uvicorn

    print("Starting SignalForge API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Metrics: http://localhost:8000/metrics")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "signalforge.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=os.getenv("LOG_LEVEL", "info").lower()
    )
