#!/usr/bin/env python
"""
Persistent runner for the studio quota service.
Keeps uvicorn running even if it crashes.
"""
import os
import subprocess
import sys
import time

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
PORT = os.getenv("PORT", "8000")


def main() -> None:
    os.chdir(PROJECT_ROOT)
    while True:
        print(f"\n[INFO] Starting studio quota service on port {PORT}...")
        try:
            subprocess.run(
                [sys.executable, "-m", "uvicorn", "studio_quota.main:app", "--port", PORT],
                check=False,
            )
        except KeyboardInterrupt:
            print("\n[INFO] Shutting down...")
            break
        except OSError as e:
            print(f"[ERROR] {e}")

        print("[INFO] Service stopped, will restart in 2 seconds...")
        time.sleep(2)


if __name__ == "__main__":
    main()
