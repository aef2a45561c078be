"""Bible passage and text to speech conversion service."""

__version__ = "1.0.0"
