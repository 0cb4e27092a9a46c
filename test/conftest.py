import io
import zipfile
from pathlib import Path

import pytest


DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture
def corrupt_bundle():
    """A bundle whose first member has a damaged deflate stream."""
    stacks = (DATA_DIR / "stacks.txt").read_bytes()
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("bad/stacks.txt", stacks, compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("good/stacks.txt", stacks)
    data = bytearray(buf.getvalue())
    # local header is 30 bytes plus the name; no extra field for small archives
    start = 30 + len("bad/stacks.txt")
    data[start : start + 8] = b"\xff" * 8
    return bytes(data)
