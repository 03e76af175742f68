"""HTTP image-compression proxy."""
__version__ = "1.0.0"
