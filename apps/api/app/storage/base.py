from __future__ import annotations

from typing import Protocol


class BundleStorage(Protocol):
    def save_bundle(self, task_id: int, data: bytes, sha256: str) -> tuple[str, int]:
        ...

    def read_bundle(self, key: str) -> bytes:
        ...
