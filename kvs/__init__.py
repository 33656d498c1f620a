"""A persistent log-structured key/value store with blocking and asyncio TCP servers and clients."""

__version__ = "0.1.0"