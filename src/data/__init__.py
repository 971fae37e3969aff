"""Data layer package.

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from src.data.mongo import MongoManager`
"""

__all__: list[str] = []
