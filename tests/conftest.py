from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import pytest

from dbgsync.cancellation import CancelToken, cancel_scope


@pytest.fixture(autouse=True)
def cancel_token():
    with cancel_scope(CancelToken()) as token:
        yield token
