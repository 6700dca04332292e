"""Fault-tolerant loader for the runtime and model files of an in-browser detector."""

__version__ = "1.2.0"
