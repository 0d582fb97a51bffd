"""Incremental JAXB source generation for multi-unit builds."""

__version__ = "0.4.0"
