"""D&D 5e dice notation parser and roll engine."""

__version__ = "0.1.0"
