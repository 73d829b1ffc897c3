"""
Artifact Generator: deterministic YAML tree plus optional Terraform export.
"""

from .generator import HEADER, ArtifactGenerator, WriteResult, parse, render
from .terraform import render_terraform

__all__ = ["HEADER", "ArtifactGenerator", "WriteResult", "parse", "render", "render_terraform"]
