from __future__ import annotations

from functools import lru_cache

from app.config import BUNDLE_ROOT
from app.storage.base import BundleStorage
from app.storage.local import LocalBundleStorage


@lru_cache(maxsize=1)
def get_storage() -> BundleStorage:
    return LocalBundleStorage(BUNDLE_ROOT)
