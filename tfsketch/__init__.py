"""Terraform resource and module diagrams."""

__version__ = "0.1.0"
