"""Loadout OCR: screenshot region presence and combat power extraction."""

__version__ = "0.1.0"
