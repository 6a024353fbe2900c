"""Pytest configuration. Ensures backend root and tests/ are on sys.path for imports like api.*, services.*, fakes."""
import sys
from pathlib import Path

_backend: Path = Path(__file__).resolve().parent
for _path in (_backend, _backend / "tests"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))
