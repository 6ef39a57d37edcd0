from __future__ import annotations

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from typing import TypeVar

from docwriter.core.config import settings
from docwriter.core.exceptions import AllModelsFailedError
from docwriter.services.storage.state_store import PREFERRED_MODEL_KEY
from docwriter.services.storage.state_store import JsonFileStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def try_in_order(
    models: list[str],
    attempt_fn: Callable[[str], Awaitable[T]],
    abort_on: tuple[type[BaseException], ...] = (),
) -> T:
    """Call ``attempt_fn`` for each model until one succeeds.

    Exceptions listed in ``abort_on`` propagate at once without trying the
    remaining models. When every model fails, an ``AllModelsFailedError``
    carrying the last underlying error is raised.
    """
    if not models:
        raise AllModelsFailedError("No models configured")

    last_error: Exception | None = None
    attempted: list[str] = []
    for model in models:
        attempted.append(model)
        try:
            logger.info("Trying model: %s", model)
            result = await attempt_fn(model)
            logger.info("Model %s succeeded", model)
            return result
        except abort_on:
            raise
        except Exception as e:
            logger.warning("Model %s failed: %s", model, str(e))
            last_error = e

    raise AllModelsFailedError(
        f"All models failed ({', '.join(attempted)}): {last_error}",
        last_error=last_error,
        attempted=attempted,
    )


class ModelChain:
    """Preferred model plus a fixed fallback order."""

    def __init__(
        self,
        preferred: str | None = None,
        fallback_models: list[str] | None = None,
        store: JsonFileStore | None = None,
    ):
        self.store = store
        self.fallback_models = list(fallback_models if fallback_models is not None else settings.fallback_models)
        stored = store.get(PREFERRED_MODEL_KEY) if store is not None else None
        self.preferred = preferred or stored or settings.model_id

    def ordered(self) -> list[str]:
        """Preferred model first, then the fallback list in order, without duplicates."""
        ordered = [self.preferred]
        for model in self.fallback_models:
            if model not in ordered:
                ordered.append(model)
        return ordered

    def set_preferred(self, model: str) -> None:
        self.preferred = model.strip()
        if self.store is not None:
            self.store.set(PREFERRED_MODEL_KEY, self.preferred)
        logger.info("Preferred model set to %s", self.preferred)

    async def try_in_order(
        self,
        attempt_fn: Callable[[str], Awaitable[T]],
        abort_on: tuple[type[BaseException], ...] = (),
    ) -> T:
        return await try_in_order(self.ordered(), attempt_fn, abort_on=abort_on)
