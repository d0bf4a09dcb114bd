"""PixelRelay: asynchronous AI image task orchestration."""

__version__ = "0.1.0"
