"""
karaokify: turns a track reference into separated, karaoke-ready stems.
"""

__version__ = "0.1.0"
