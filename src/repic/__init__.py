"""Image acquisition and caching pipeline for the rePic viewer."""

__version__ = "0.4.0"
