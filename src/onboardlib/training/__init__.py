"""Correction grammar, few-shot examples and fine-tuning exports from feedback."""

from onboardlib.training.corrections import parse_entity_correction, parse_relationship_correction
from onboardlib.training.exporter import ExportFormat, ExportOptions, ExportResult, TrainingExporter
from onboardlib.training.few_shot import FewShotGenerator, FewShotOptions

__all__ = [
    "ExportFormat",
    "ExportOptions",
    "ExportResult",
    "FewShotGenerator",
    "FewShotOptions",
    "TrainingExporter",
    "parse_entity_correction",
    "parse_relationship_correction",
]
