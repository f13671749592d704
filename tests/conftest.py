"""Shared test configuration for the refresh worker tests."""

import os
import sys

# Add refresh_worker directory to path for "from refresher.xxx" imports
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_worker_path = os.path.join(PROJECT_ROOT, "refresh_worker")
if _worker_path not in sys.path:
    sys.path.insert(0, _worker_path)
