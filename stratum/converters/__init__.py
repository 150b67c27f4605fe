"""
Stratum converters package

Converters render graphs, plans and run summaries as DOT, JSON and text.
"""

from .json_converter import PlanJSONEncoder, summary_to_json, to_json
from .dot_converter import to_dot
from .text_converter import summary_to_text, to_text

__all__ = ["PlanJSONEncoder", "summary_to_json", "summary_to_text", "to_dot", "to_json", "to_text"]
