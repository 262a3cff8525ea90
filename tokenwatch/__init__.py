"""Token discovery & price aggregation pipeline for a single EVM chain."""

__version__ = '0.1.0'
