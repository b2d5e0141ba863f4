"""
Root pytest configuration for the notification delivery engine.

Sets up the Python path and test environment variables before any settings
class reads the environment.
"""

import os
import sys
from pathlib import Path

os.environ.setdefault("NOTIFICATION_ENGINE_ENV", "development")
os.environ.setdefault("NOTIFICATION_ENGINE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("OBSERVABILITY_LOG_FORMAT", "console")
os.environ.setdefault("DELIVERY_STORE_BACKEND", "memory")
os.environ.setdefault("BREVO_API_KEY", "test_brevo_key_for_pytest_only")
os.environ.setdefault("SMTP_HOST", "smtp.test.local")

project_root = Path(__file__).parent

src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))
