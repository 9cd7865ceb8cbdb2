"""Shared pytest setup.

``web.app`` initialises the database at import time, so DB_PATH must point
somewhere disposable before any test module imports it.
"""

import os
import tempfile

os.environ["DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="speculation-tests-"), "import.db")
