"""Stitch - visual workflow compiler and edge-walking execution engine.

Turns canvas graphs into validated execution graphs and runs them node by node,
with splitter/collector fan-out and asynchronous worker callbacks.
"""

__version__ = "0.1.0"
