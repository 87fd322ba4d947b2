from __future__ import annotations

import base64
import hashlib


def row_identity(source_id: int, file_path: str, row_number: int) -> str:
    """
    Stable ledger key for one row of one file.

    SHA-256 over `"{source_id}:{file_path}:{row_number}"`, url-safe base64
    with the padding stripped (always 43 characters).
    """
    digest = hashlib.sha256(f"{source_id}:{file_path}:{row_number}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
