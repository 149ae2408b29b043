"""Gzip helpers for payloads and traces stored as binary columns."""

import gzip
import json
from typing import Any, Optional


def compress_json(data: Any) -> bytes:
    return gzip.compress(json.dumps(data, default=str).encode("utf-8"))


def decompress_json(blob: Optional[bytes]) -> Any:
    if not blob:
        return None
    return json.loads(gzip.decompress(blob).decode("utf-8"))
