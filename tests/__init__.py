"""Tests package"""

# Lets ``python tests/test_*.py`` import the project packages when the
# repository root is not already on ``sys.path``.
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
