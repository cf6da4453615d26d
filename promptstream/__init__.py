"""promptstream: stream a local model's answer while the model loads lazily."""

__version__ = "0.1.0"
