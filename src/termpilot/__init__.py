"""Terminal conversation engine: context windows, streaming sessions and tool dispatch."""

__version__ = "0.1.0"
