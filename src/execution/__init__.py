"""Execution layer (only place that touches wallet keys and the trading platform).

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from src.execution.platform_client import PlatformClient`
  - `from src.execution.dispatcher import ExecutionDispatcher`
"""

__all__: list[str] = []
