"""Trace-driven out-of-order core, DRAM controller, memory queues and trace-reading components."""

__version__ = "0.1.0"