"""
Order extraction — classify a synced email and pull order details out of it.

This is an opaque LLM step from the pipeline's point of view: the mailbox
sync only depends on the ``OrderExtraction`` it returns.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from utils.llm_providers import BaseLLMProvider, provider_for
from utils.schemas import MailMessage, OrderExtraction

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """You read a single email and decide whether it is an online \
order confirmation (a new purchase placed with a merchant). Shipping updates, \
delivery notices, newsletters, marketing and account emails are NOT order \
confirmations.

For order confirmations extract the order number, merchant, order date, the \
purchased items (name, price, quantity, a coarse category such as Electronics, \
Clothing, Home, Food, Travel, Entertainment or Health), total amount, currency, \
an explicit return deadline if the email states one, and the warranty length \
in months if stated or reasonably implied by the item type (electronics 12-24, \
appliances and furniture 24, clothing 0). Dates are YYYY-MM-DD. Use null for \
anything you cannot find. Report your confidence as high, medium or low."""

_OUTPUT_SCHEMA = OrderExtraction.model_json_schema()


class OrderExtractor:
    """
    Calls the extraction LLM for one message at a time.

    The provider is resolved on the first call, so building the extractor
    never needs LLM credentials.
    """

    def __init__(
        self,
        llm: Optional[BaseLLMProvider] = None,
        temperature: Optional[float] = None,
    ):
        self._llm = llm
        self._temperature = temperature

    def _provider(self) -> BaseLLMProvider:
        if self._llm is None:
            self._llm, default_temperature = provider_for("extraction")
            if self._temperature is None:
                self._temperature = default_temperature
        return self._llm

    async def __call__(self, message: MailMessage) -> OrderExtraction:
        llm = self._provider()
        prompt = (
            f"From: {message.sender}\n"
            f"Subject: {message.subject}\n\n"
            f"{message.body[:4000]}"
        )
        reply = await llm.generate(
            prompt,
            system=_SYSTEM_PROMPT,
            temperature=0.1 if self._temperature is None else self._temperature,
            max_tokens=1000,
            output_schema=_OUTPUT_SCHEMA,
        )
        if not isinstance(reply, dict):
            return OrderExtraction()
        try:
            return OrderExtraction.model_validate(reply)
        except PydanticValidationError as exc:
            logger.warning("Discarding malformed extraction for message %s: %s", message.id, exc)
            return OrderExtraction()
