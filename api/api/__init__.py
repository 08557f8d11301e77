"""HTTP surface of the Luisterslim usage-quota service."""

__version__ = "0.1.0"
