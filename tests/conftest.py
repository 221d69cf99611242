# tests/conftest.py
import os
import shutil
import tempfile

import pytest

# --- Point config at throwaway storage BEFORE the app is imported ---
_TMP_ROOT = tempfile.mkdtemp(prefix="myopia-tests-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP_ROOT, "uploads")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["GEMINI_API_KEY"] = ""


@pytest.fixture(scope="session", autouse=True)
def cleanup_tmp_root():
    yield
    shutil.rmtree(_TMP_ROOT, ignore_errors=True)
