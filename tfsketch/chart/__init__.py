"""Diagram rendering for linked Terraform trees."""

from .mermaid import MermaidFlowChart, RenderError, escape_label
from .summary import Summary

__all__ = ["MermaidFlowChart", "RenderError", "Summary", "escape_label"]
