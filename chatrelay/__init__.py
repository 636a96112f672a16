"""chatrelay: relay streamed model completions to subscribers and persist them."""

__version__ = "0.1.0"
