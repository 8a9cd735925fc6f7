"""
Core Sentry - Advisory Client
=============================

Asks an external language model (Ollama-compatible generate API) which
remedial action to take for the current telemetry.

The prompt carries the raw metrics, the configured thresholds and the
threshold comparisons already computed, so the model does not have to do
arithmetic. Replies are untrusted: every failure mode (timeout, network
error, bad status, unparseable body, unknown action) yields "no decision"
instead of an exception.

Providers:
- HttpAdvisoryTransport: POSTs to the configured endpoint
- MockAdvisoryTransport: canned replies for development and tests
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
import asyncio
import json
import re
import httpx
from pydantic import ValidationError

from coresentry.api.schemas import AdvisoryDecision, TelemetrySample, Thresholds
from coresentry.constants import ActionKind, Advisory, Policy, Timing
from coresentry.core.telemetry import format_metric, is_critical
from coresentry.utils.http_client import ServiceClient, ServiceClientConfig
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


class AdvisoryUnavailable(Exception):
    """The advisory service could not be reached or answered with an error."""
    pass


class MalformedAdvisoryResponse(Exception):
    """The advisory reply could not be turned into a decision."""
    pass


# =============================================================================
# TRANSPORTS
# =============================================================================

class AdvisoryTransport(ABC):
    """Sends one request payload to the advisory service."""

    @abstractmethod
    async def evaluate(self, endpoint: str, payload: dict[str, Any]) -> Any:
        """
        Send ``payload`` and return the decoded JSON body.

        Raises:
            AdvisoryUnavailable: Transport failure or non-2xx status.
            MalformedAdvisoryResponse: Body is not JSON.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


class HttpAdvisoryTransport(AdvisoryTransport):
    """Advisory transport over HTTP."""

    def __init__(
        self,
        timeout_seconds: float = Timing.ADVISORY_TIMEOUT_SECONDS,
        client: Optional[ServiceClient] = None
    ):
        self._client = client or ServiceClient(
            ServiceClientConfig(timeout_seconds=timeout_seconds)
        )

    async def evaluate(self, endpoint: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(endpoint, data=payload)
        except httpx.TimeoutException as e:
            raise AdvisoryUnavailable(f"Advisory request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AdvisoryUnavailable(f"Advisory request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise AdvisoryUnavailable(f"Advisory returned status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise MalformedAdvisoryResponse("Advisory body is not JSON") from e

    async def close(self) -> None:
        await self._client.close()


class MockAdvisoryTransport(AdvisoryTransport):
    """
    Returns a canned reply in the advisory wire format.

    ``reply`` is the decision object the model would have produced; it is
    JSON-encoded into the ``response`` field like a real generate call.
    Every payload sent is kept in ``requests``.
    """

    def __init__(
        self,
        reply: Optional[Mapping[str, Any]] = None,
        delay_seconds: float = 0.0
    ):
        self.reply = dict(reply or {"action": "NONE", "reason": "Mock advisory"})
        self.delay_seconds = delay_seconds
        self.requests: list[dict[str, Any]] = []

    async def evaluate(self, endpoint: str, payload: dict[str, Any]) -> Any:
        self.requests.append(payload)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return {"model": payload.get("model"), "response": json.dumps(self.reply), "done": True}


# =============================================================================
# CLIENT
# =============================================================================

def _extract_json_object(text: str) -> Any:
    """Decode the JSON object in ``text``, ignoring code fences and chatter."""
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise MalformedAdvisoryResponse("Advisory response contains no JSON object")

    try:
        return json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise MalformedAdvisoryResponse(f"Advisory response is not valid JSON: {e}") from e


class AdvisoryClient:
    """
    Builds advisory prompts and parses advisory replies.

    Stateless per call; ``endpoint`` and ``model`` can be changed at
    runtime and apply to the next request.

    Example:
        client = AdvisoryClient(HttpAdvisoryTransport())
        advice = await client.request_decision(sample, thresholds)
        if advice is None:
            ...  # advisory unavailable this cycle
    """

    def __init__(
        self,
        transport: AdvisoryTransport,
        endpoint: str = Advisory.ENDPOINT,
        model: str = Advisory.MODEL,
        timeout_seconds: float = Timing.ADVISORY_TIMEOUT_SECONDS,
        temperature: float = Advisory.TEMPERATURE,
        top_p: float = Advisory.TOP_P
    ):
        self.transport = transport
        self._endpoint = endpoint
        self._model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.top_p = top_p

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @endpoint.setter
    def endpoint(self, value: str) -> None:
        if not value:
            raise ValueError("Advisory endpoint must not be empty")
        self._endpoint = value

    @property
    def model(self) -> str:
        return self._model

    @model.setter
    def model(self, value: str) -> None:
        if not value:
            raise ValueError("Advisory model must not be empty")
        self._model = value

    def configure(self, endpoint: Optional[str] = None, model: Optional[str] = None) -> None:
        """Update endpoint and/or model."""
        if endpoint is not None:
            self.endpoint = endpoint
        if model is not None:
            self.model = model

        logger.info(
            "Advisory configuration updated",
            extra={"endpoint": self._endpoint, "model": self._model}
        )

    def build_prompt(self, sample: TelemetrySample, thresholds: Thresholds) -> str:
        """Describe the sample, the thresholds and their comparisons."""
        lag = sample.block_duration
        memory = sample.memory_usage_pct or 0.0
        io = sample.active_requests

        lines = [
            "You are an autonomous resource orchestrator for a single-threaded runtime.",
            "Balance performance against cost.",
            "",
            "CURRENT STATE:",
            f"- Function: {sample.function}",
            f"- Event loop lag: {format_metric(lag)}ms (threshold {format_metric(thresholds.block)}ms)",
            f"- Heap usage: {memory:.2f}% (threshold {format_metric(thresholds.heap)}%)",
            f"- Active I/O requests: {io} (threshold {format_metric(thresholds.io)})",
        ]
        if sample.microtasks_count is not None:
            lines.append(f"- Pending microtasks: {sample.microtasks_count}")

        lines += [
            "",
            "COMPARISONS (already computed, trust these):",
            f"- lag_above_threshold: {str(lag > thresholds.block).lower()}",
            f"- lag_low: {str(lag < thresholds.block * Policy.LAG_LOW_RATIO).lower()}",
            f"- memory_above_threshold: {str(memory > thresholds.heap).lower()}",
            f"- io_above_threshold: {str(io > thresholds.io).lower()}",
            f"- critical_function: {str(is_critical(sample, thresholds)).lower()}",
        ]
        if sample.microtasks_count is not None and thresholds.microtasks is not None:
            above = sample.microtasks_count > thresholds.microtasks
            lines.append(f"- microtasks_above_threshold: {str(above).lower()}")

        lines += [
            "",
            "RULES:",
            "- memory_above_threshold: CLEAN_CACHE",
            "- io_above_threshold: REJECT_TRAFFIC",
            "- lag_above_threshold: SCALE_UP_WORKERS",
            "- lag_low and heap stable: SCALE_DOWN_WORKERS (saves cost)",
            "- everything within limits: NONE",
            "",
            "Allowed actions: " + ", ".join(kind.value for kind in ActionKind),
            'Reply with JSON only: {"action": "string", "reason": "string", "intensity": number}',
        ]
        return "\n".join(lines)

    def build_payload(self, prompt: str) -> dict[str, Any]:
        """Request body for the generate endpoint."""
        return {
            "model": self._model,
            "prompt": prompt,
            "format": "json",
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "top_p": self.top_p,
            },
        }

    def parse_response(self, body: Any) -> AdvisoryDecision:
        """
        Turn a generate response body into a decision candidate.

        Raises:
            MalformedAdvisoryResponse: Missing ``response`` field, no JSON
                object, or an action outside the known set.
        """
        if not isinstance(body, Mapping) or "response" not in body:
            raise MalformedAdvisoryResponse("Advisory body has no 'response' field")

        raw = body["response"]
        if isinstance(raw, Mapping):
            data = raw
        elif isinstance(raw, str):
            data = _extract_json_object(raw)
        else:
            raise MalformedAdvisoryResponse(
                f"Advisory 'response' has unexpected type {type(raw).__name__}"
            )

        if not isinstance(data, Mapping):
            raise MalformedAdvisoryResponse("Advisory decision is not a JSON object")

        try:
            return AdvisoryDecision.model_validate(data)
        except ValidationError as e:
            raise MalformedAdvisoryResponse(f"Invalid advisory decision: {e.errors()}") from e

    async def request_decision(
        self,
        sample: TelemetrySample,
        thresholds: Thresholds
    ) -> Optional[AdvisoryDecision]:
        """
        Ask the advisory for a decision.

        Returns:
            The parsed candidate, or None when no decision could be obtained.
        """
        payload = self.build_payload(self.build_prompt(sample, thresholds))

        try:
            body = await asyncio.wait_for(
                self.transport.evaluate(self._endpoint, payload),
                timeout=self.timeout_seconds
            )
            advice = self.parse_response(body)

        except asyncio.TimeoutError:
            logger.warning(
                f"Advisory timed out after {self.timeout_seconds}s",
                extra={"endpoint": self._endpoint, "model": self._model}
            )
            return None
        except AdvisoryUnavailable as e:
            logger.warning(
                "Advisory unavailable",
                extra={"endpoint": self._endpoint, "error": str(e)}
            )
            return None
        except MalformedAdvisoryResponse as e:
            logger.warning(
                "Malformed advisory response",
                extra={"endpoint": self._endpoint, "error": str(e)}
            )
            return None
        except Exception as e:
            logger.error(f"Advisory call failed: {e}", exc_info=True)
            return None

        logger.info(
            f"Advisory proposed {advice.action.value}",
            extra={
                "advisory_action": advice.action.value,
                "advisory_reason": advice.reason,
                "advisory_intensity": advice.intensity,
            }
        )
        return advice

    async def close(self) -> None:
        await self.transport.close()
