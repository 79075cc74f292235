#!/usr/bin/env python3
"""
Investment Engine Entry Point

Starts the recurring payout worker against the configured database.
Settings come from INVEST_-prefixed environment variables or a .env file.
"""

import signal
import sys
import threading

from investment_core.engine import InvestmentEngine


def main() -> int:
    engine = InvestmentEngine()
    stop = threading.Event()

    def request_stop(signum, frame):
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    print("Starting Investment Engine...")
    print(f"Database: {engine.config.database_url}")
    print(f"Payout interval: {engine.config.payout_interval_seconds}s "
          f"with {engine.config.payout_worker_count} workers")

    try:
        engine.start()
        stop.wait()
    except Exception as e:
        print(f"Error running investment engine: {e}")
        return 1
    finally:
        print("Shutting down Investment Engine...")
        engine.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
