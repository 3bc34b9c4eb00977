"""Lidar map management: scan loading, downsampling and dynamic object removal."""

__version__ = "0.1.0"