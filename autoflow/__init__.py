"""autoflow: workflow graph engine."""

__version__ = "1.0.0"
