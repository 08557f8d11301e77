"""Luisterslim operator command-line interface."""
