"""Live preview gateway: preview instance lifecycle, rewriting reverse proxy and inspection."""

__version__ = "0.1.0"
