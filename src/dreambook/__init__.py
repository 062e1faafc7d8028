"""Dreambook - illustrated dream sequence generation from a reference photo."""

__version__ = "0.1.0"
