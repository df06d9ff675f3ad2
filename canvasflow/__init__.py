"""Canvasflow - graph compiler and execution engine for canvas workflows.

Compiles authored canvas graphs into validated execution graphs and drives
runs forward as external workers report completion through callbacks.
"""

__version__ = "0.1.0"
