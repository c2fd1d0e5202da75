#!/usr/bin/env python3
"""
run.py — Launch timp-relay without installing.

Usage (from the repository root):
    python run.py start
    python run.py start --port 3000 --db-url sqlite:///schedules.db
    python run.py init-config
    python run.py stats
    python run.py recent
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from timp_relay.main import app

if __name__ == "__main__":
    app()
