"""Optional text classification service used to enrich weak suggestions."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Protocol

import httpx
from smartimport_schemas import OracleRequest, Suggestion

from .errors import OracleUnavailable

logger = logging.getLogger(__name__)

_DIRECTIONS = ("income", "expense", "transfer")


class TextClassifier(Protocol):
    """Anything that can suggest a category for a transaction description."""

    def classify(self, request: OracleRequest) -> Suggestion:
        """Return a suggestion or raise ``OracleUnavailable``."""
        ...


class HttpTextClassifier:
    """POST the description to a JSON endpoint and read back a category.

    The endpoint answers ``{"category": ..., "confidence": ..., "account": ...}``.
    At most ``max_concurrent`` requests are in flight at once.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        max_concurrent: int = 2,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(connect=2.0, read=timeout_seconds, write=5.0, pool=2.0)
        )
        self._slots = threading.Semaphore(max_concurrent)

    def classify(self, request: OracleRequest) -> Suggestion:
        if not self._slots.acquire(timeout=self.timeout_seconds):
            raise OracleUnavailable("No free oracle slot")
        try:
            response = self._client.post(self.url, json=request.model_dump(mode="json"))
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise OracleUnavailable(f"Oracle timed out after {self.timeout_seconds}s") from exc
        except httpx.HTTPStatusError as exc:
            raise OracleUnavailable(
                f"Oracle returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise OracleUnavailable(f"Oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleUnavailable("Oracle returned invalid JSON") from exc
        finally:
            self._slots.release()
        return self._to_suggestion(request, payload)

    @staticmethod
    def _to_suggestion(request: OracleRequest, payload: Any) -> Suggestion:
        if not isinstance(payload, dict) or not payload.get("category"):
            raise OracleUnavailable("Oracle response lacks a category")
        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError) as exc:
            raise OracleUnavailable("Oracle confidence is not a number") from exc
        category = str(payload["category"])
        direction = payload.get("direction")
        if direction not in _DIRECTIONS:
            direction = request.direction
        return Suggestion(
            category=category,
            account=payload.get("account"),
            direction=direction,
            confidence=min(max(confidence, 0.0), 1.0),
            source="oracle",
            explanations=[f"Text classifier suggested '{category}'"],
        )

    def close(self) -> None:
        self._client.close()


class BestEffortOracle:
    """Wrap a classifier so failures and slow answers never fail a record.

    Each call is bounded by ``timeout_seconds``; a late answer is discarded.
    """

    def __init__(
        self,
        classifier: TextClassifier,
        timeout_seconds: float = 5.0,
        max_workers: int = 2,
    ) -> None:
        self._classifier = classifier
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="oracle"
        )

    def suggest(self, request: OracleRequest) -> Suggestion | None:
        future = self._executor.submit(self._classifier.classify, request)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.warning("Oracle timed out after %.2fs", self.timeout_seconds)
        except OracleUnavailable as exc:
            logger.warning("Oracle unavailable: %s", exc)
        except Exception as exc:
            logger.exception("Unexpected oracle failure: %s", exc)
        return None

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        close = getattr(self._classifier, "close", None)
        if callable(close):
            close()


__all__ = ["BestEffortOracle", "HttpTextClassifier", "TextClassifier"]
