"""
Built-in provider plugins.

Third-party providers are discovered via Python entry points
(group: 'converge.providers').
"""

from plugins.providers.memory import MemoryProvider

__all__ = ["MemoryProvider"]
