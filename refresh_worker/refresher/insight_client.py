"""Async AI insight client using an OpenAI-compatible API."""

import logging
from datetime import datetime, timezone

import openai

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a crypto news analyst writing a daily intelligence brief. "
    "Use only the provided data, group related stories, explain why each "
    "item matters, and skip anything unrelated to crypto. Title the brief "
    "'Your {topic} Daily Brief - {date}' and output only the brief."
)


class InsightError(Exception):
    """Raised when insight synthesis fails."""


class InsightClient:
    """Condenses a category's raw intel and social text into one brief."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 90.0,
    ):
        self._model = model
        self._client = openai.AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
        )

    @staticmethod
    def build_input(intel: str | None, social: str | None, category_label: str) -> str:
        parts = [f"Category: {category_label}"]
        if intel:
            parts.append(f"Intel News:\n{intel}")
        else:
            parts.append("Intel News: Not available.")
        if social:
            parts.append(f"Twitter Content:\n{social}")
        else:
            parts.append("Twitter Content: Not available.")
        return "\n\n".join(parts)

    async def synthesize(
        self, intel: str | None, social: str | None, category_label: str
    ) -> str:
        """Generate a condensed brief for one category.

        Args:
            intel: Raw generated news text.
            social: Raw social text, if any.
            category_label: Human-readable category name.

        Returns:
            The brief text.

        Raises:
            InsightError: On API failure, a filtered response or an empty answer.
        """
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        system = SYSTEM_PROMPT.format(topic=category_label, date=today)
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": self.build_input(intel, social, category_label)},
                ],
                temperature=0.3,
                max_tokens=5000,
            )
        except (openai.APIError, openai.APIConnectionError) as e:
            raise InsightError(f"Insight API error for {category_label}: {e}") from e

        if not response.choices:
            raise InsightError(f"Insight API returned no choices for {category_label}")
        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise InsightError(f"Insight for {category_label} was blocked by a safety filter")
        text = choice.message.content or ""
        if not text.strip():
            raise InsightError(f"Insight API returned empty content for {category_label}")
        return text

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
