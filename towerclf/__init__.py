"""Staged transfer-learning training and threshold-sweep evaluation for a binary image classifier."""

__version__ = "0.1.0"
