"""
Log into an institutional results portal, wait for the marks tables to finish rendering,
extract the records heuristically and store them idempotently.
"""

__version__ = "0.1.0"
