"""
Step Classifier - place evidence text in the experimental method

Asks the LLM which systematic step (Hypothesis → Experiment → Observation →
Evaluation → Conclusion) a piece of evidence documents, and validates the
answer strictly. The result is a tagged type: Classified(step, confidence)
or Unclassified(reason). Nothing downstream ever sees the raw JSON.
"""
import json
import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from config import Settings
from models.domain import Classified, ClassificationResult, SystematicStep, Unclassified
from services.term_similarity import sanitize_text

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a precise JSON classifier. Always return valid JSON."

USER_PROMPT = """You are classifying R&D evidence for an R&D tax incentive claim.
Core R&D requires systematic progression: Hypothesis → Experiment → Observation → Evaluation → Conclusion.

Classify this text into ONE of those five steps.
Return JSON exactly: {{"step":"Hypothesis|Experiment|Observation|Evaluation|Conclusion|Unknown","confidence":0..1}}
If unclear or non-R&D, return {{"step":"Unknown","confidence":0}}.

Text: \"\"\"
{content}
\"\"\""""


def parse_classifier_response(raw: Optional[str]) -> ClassificationResult:
    """
    Validate the model's JSON.

    Only a known step name and a numeric confidence in [0, 1] pass.
    """
    if not raw:
        return Unclassified(reason='invalid_response')
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"[Classifier] Unparseable response: {raw[:200]}")
        return Unclassified(reason='invalid_response')

    if not isinstance(data, dict):
        return Unclassified(reason='invalid_response')

    step = data.get('step')
    confidence = data.get('confidence')
    valid_steps = {s.value for s in SystematicStep}
    if step not in valid_steps or isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        logger.info(f"[Classifier] Invalid response format: {data}")
        return Unclassified(reason='invalid_response')
    if not 0 <= confidence <= 1:
        return Unclassified(reason='invalid_response')

    return Classified(step=SystematicStep(step), confidence=float(confidence))


class StepClassifier:
    """
    LLM-backed systematic step classifier.

    Usage:
        classifier = StepClassifier(get_settings())
        result = await classifier.classify(evidence.content)
        if isinstance(result, Classified):
            ...  # persist result.step
    """

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.model = settings.classifier_model
        self.min_length = settings.classify_min_length
        self.confidence_threshold = settings.classify_confidence_threshold
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.client = client

    async def classify(self, content: Optional[str]) -> ClassificationResult:
        if not content or not content.strip():
            return Unclassified(reason='no_content')

        clean = sanitize_text(content)
        if len(clean) < self.min_length:
            return Unclassified(reason='too_short')

        if self.client is None:
            logger.warning("[Classifier] No LLM API key configured")
            return Unclassified(reason='not_configured')

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": USER_PROMPT.format(content=clean)},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=100,
                timeout=10.0,
            )
        except OpenAIError as e:
            logger.error(f"[Classifier] LLM call failed: {e}")
            return Unclassified(reason='llm_error')

        result = parse_classifier_response(response.choices[0].message.content)
        if isinstance(result, Classified) and result.confidence < self.confidence_threshold:
            logger.info(f"[Classifier] Low confidence {result.confidence:.2f} for {result.step.value}")
            return Unclassified(reason='low_confidence')
        return result
