"""Pattern refinement suggestions from an OpenAI-compatible chat endpoint.

Suggestions are advisory text only. Every failure is reported as a fallback
message so callers can log the outcome without handling exceptions.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from models.experiment import LearningPattern
from utils.logger import get_logger

logger = get_logger("refinement")

FALLBACK_SUGGESTION = "Could not get a refined pattern from the AI due to an error."

_EXPERIMENT_PROMPT = """As an expert AI trading strategist, analyze the following trading pattern that failed when tested.
The experiment resulted in a P/L of {pnl:.2f} USD.

Failed Pattern Details:
- Title: "{title}"
- Category: {category}
- Hypothesis: "{description}"
- Trigger Asset: {trigger_asset}
- Affected Asset: {affected_asset}
- Direction: {direction}
- AI Confidence: {confidence}%

Propose a refined, more robust version of this pattern.
1. Identify potential flaws. Was it too simple? Did it miss a confirmation (volume, volatility, another asset's move)?
2. Suggest 1-2 specific additional conditions that would improve its accuracy.
3. Provide a new, improved "description" for the refined pattern.
Keep the response concise and actionable."""

_PATTERN_PROMPT = """As an expert AI trading strategist, review this candidate trading pattern before it is tested.

Pattern Details:
- Title: "{title}"
- Category: {category}
- Hypothesis: "{description}"
- Trigger Asset: {trigger_asset}
- Affected Asset: {affected_asset}
- Direction: {direction}
- Observations: {observation_count}
- AI Confidence: {confidence}%

Suggest 1-2 concrete conditions that would make the pattern more robust and give an improved "description".
Keep the response concise and actionable."""


def build_refinement_prompt(pattern: LearningPattern, prior_pnl: Optional[float] = None) -> str:
    fields: dict[str, Any] = {
        "title": pattern.title,
        "category": pattern.category,
        "description": pattern.description,
        "trigger_asset": pattern.trigger_asset,
        "affected_asset": pattern.affected_asset,
        "direction": pattern.trade_direction.value,
        "confidence": pattern.confidence,
        "observation_count": pattern.observation_count,
    }
    if prior_pnl is None:
        return _PATTERN_PROMPT.format(**fields)
    return _EXPERIMENT_PROMPT.format(pnl=prior_pnl, **fields)


class PatternRefinementService:
    """``suggest_refinement`` collaborator backed by a chat completions API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def suggest_refinement(self, pattern: LearningPattern, prior_pnl: Optional[float] = None) -> str:
        if not self.api_key:
            logger.info("Refinement skipped, no API key configured", pattern_id=pattern.id)
            return FALLBACK_SUGGESTION

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": build_refinement_prompt(pattern, prior_pnl)}],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._build_headers(),
                    json=payload,
                )
            if response.status_code != 200:
                logger.warning(
                    "Refinement request rejected",
                    status=response.status_code,
                    body=response.text[:200],
                )
                return FALLBACK_SUGGESTION
            data = response.json()
            return str(data["choices"][0]["message"]["content"]).strip() or FALLBACK_SUGGESTION
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Refinement request failed", pattern_id=pattern.id, error=str(exc))
            return FALLBACK_SUGGESTION
