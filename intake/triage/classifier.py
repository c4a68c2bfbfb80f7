"""Intent classifiers.

:class:`LLMClassifier` talks to an OpenAI compatible chat-completions API
(DeepSeek by default). :class:`KeywordClassifier` is deterministic and needs
no network; it is used when no API key is configured.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import openai
from openai import OpenAI

from ..config import IntakeSettings
from ..core.errors import (
    ClassificationTimeout,
    PermanentClassificationError,
    TransientClassificationError,
)
from .collaborators import Classification, ClassificationContext
from .rules import fold

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.deepseek.com/v1"

SYSTEM_PROMPT = """You triage inbound WhatsApp conversations for a B2B company.
Pick the intent that best describes what the customer wants.

Known intents: {intents}

Reply with a strict JSON object:
{{"intent": "<one of the known intents or null>",
  "confidence": <0.0 to 1.0>,
  "sentiment": "positive" | "neutral" | "negative",
  "entities": {{"<name>": "<value>"}}}}"""

DEFAULT_KEYWORDS: Mapping[str, Sequence[str]] = {
    "sales": (
        "produto", "preco", "compra", "comprar", "pedido", "cotacao", "orcamento",
        "price", "quote", "order", "buy",
    ),
    "support": (
        "problema", "defeito", "troca", "garantia", "nao funciona", "suporte",
        "broken", "defect", "warranty", "support",
    ),
    "finance": (
        "boleto", "pagamento", "nota fiscal", "financeiro", "fatura",
        "invoice", "payment", "billing",
    ),
}

NEGATIVE_WORDS = (
    "absurdo", "pessimo", "horrivel", "reclamacao", "cancelar", "procon",
    "terrible", "awful", "complaint", "angry",
)


def _parse_payload(raw: str | None) -> Classification:
    if not raw:
        raise TransientClassificationError("Classifier returned an empty response")
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TransientClassificationError(f"Classifier returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TransientClassificationError("Classifier response is not a JSON object")
    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError) as exc:
        raise TransientClassificationError("Classifier confidence is not a number") from exc
    intent = data.get("intent") or None
    entities = data.get("entities") if isinstance(data.get("entities"), dict) else {}
    return Classification(
        intent=str(intent) if intent is not None else None,
        confidence=min(max(confidence, 0.0), 1.0),
        entities=entities,
        sentiment=data.get("sentiment") or None,
    )


class LLMClassifier:
    """Classify through the chat-completions endpoint with a JSON reply."""

    def __init__(
        self,
        settings: IntakeSettings,
        *,
        client: Any | None = None,
        default_intents: Sequence[str] = tuple(DEFAULT_KEYWORDS),
    ) -> None:
        self.model = settings.classifier_model
        self.timeout = settings.classifier_timeout_seconds
        self.default_intents = list(default_intents)
        self.client = client or OpenAI(
            api_key=settings.classifier_api_key,
            base_url=settings.classifier_url or DEFAULT_BASE_URL,
            timeout=settings.classifier_timeout_seconds,
            max_retries=0,
        )

    def classify(self, context: ClassificationContext) -> Classification:
        intents = context.candidate_intents or self.default_intents
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": SYSTEM_PROMPT.format(intents=", ".join(intents)),
                    },
                    {"role": "user", "content": context.text},
                ],
                temperature=0.3,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
        except openai.APITimeoutError as exc:
            raise ClassificationTimeout(str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise TransientClassificationError(str(exc)) from exc
        except (openai.RateLimitError, openai.InternalServerError) as exc:
            raise TransientClassificationError(str(exc)) from exc
        except openai.APIStatusError as exc:
            raise PermanentClassificationError(
                f"Classifier rejected the request ({exc.status_code})"
            ) from exc

        if not completion.choices:
            raise TransientClassificationError("Classifier returned no choices")
        result = _parse_payload(completion.choices[0].message.content)
        logger.info(
            "Conversation %s classified as %s (%.2f)",
            context.conversation_id,
            result.intent,
            result.confidence,
        )
        return result


class KeywordClassifier:
    """Score intents by counting accent-insensitive keyword hits."""

    def __init__(self, keywords: Mapping[str, Sequence[str]] | None = None) -> None:
        source = keywords if keywords is not None else DEFAULT_KEYWORDS
        self.keywords = {
            intent: [fold(word) for word in words] for intent, words in source.items()
        }

    def classify(self, context: ClassificationContext) -> Classification:
        text = fold(context.text)
        scores = {
            intent: [word for word in words if word in text]
            for intent, words in self.keywords.items()
        }
        sentiment = "negative" if any(w in text for w in NEGATIVE_WORDS) else "neutral"
        best = max(scores.items(), key=lambda item: len(item[1]), default=None)
        if best is None or not best[1]:
            return Classification(intent=None, confidence=0.0, sentiment=sentiment)
        intent, hits = best
        return Classification(
            intent=intent,
            confidence=min(0.5 + 0.15 * len(hits), 0.95),
            entities={"keywords": hits},
            sentiment=sentiment,
        )


__all__ = ["DEFAULT_KEYWORDS", "KeywordClassifier", "LLMClassifier"]
