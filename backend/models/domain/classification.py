"""
Step classification result

The text classifier either produces a step with a confidence, or explains
why it did not. Callers match on the type instead of probing dict keys.
"""
from dataclasses import dataclass
from typing import Union

from .evidence import SystematicStep


@dataclass(frozen=True)
class Classified:
    step: SystematicStep
    confidence: float


@dataclass(frozen=True)
class Unclassified:
    reason: str  # no_content | too_short | low_confidence | invalid_response | llm_error | not_configured


ClassificationResult = Union[Classified, Unclassified]
