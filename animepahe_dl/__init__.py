"""
AnimePahe HLS episode downloader.
"""

__version__ = "1.0.0"
