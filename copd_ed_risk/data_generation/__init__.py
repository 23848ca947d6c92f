"""Synthetic claims generation."""

from .generate_claims_data import ClaimsDataGenerator

__all__ = ['ClaimsDataGenerator']
