"""taskd: supervises coding-agent subprocesses behind one host connection."""

__version__ = "0.3.0"
