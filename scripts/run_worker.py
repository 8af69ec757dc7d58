#!/usr/bin/env python3
"""
Run a message-relay worker from a source checkout.

Usage:
    python scripts/run_worker.py producer
    python scripts/run_worker.py consumer --config config/settings.yaml
    python scripts/run_worker.py both

    # Inside Docker:
    docker compose run --rm worker python scripts/run_worker.py consumer
"""
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from job_queue.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
