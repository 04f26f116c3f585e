"""Slot reservation and payment confirmation pipeline."""

__version__ = "0.1.0"
