"""buildlock: FIFO exclusive locks for a shared IDE build engine."""

__version__ = "0.1.0"
