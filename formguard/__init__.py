"""Secure public form submission pipeline."""
