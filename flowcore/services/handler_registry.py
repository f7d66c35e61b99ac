"""
Step Handlers - Registry of handlers for automated step types

Handlers are plain callables `handler(configuration, context)` returning the
output delta (dict or None), a HandlerResult, or an `(output, error)` tuple.
A handler with nothing to do returns `HandlerResult(skipped=True)`.
"""
from typing import Any, Callable, Dict, Optional

import httpx

from ..config.settings import Settings, get_settings
from ..domain.models import HandlerResult
from ..domain.enums import StepType
from ..domain.errors import HandlerError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

StepHandler = Callable[[Dict[str, Any], Dict[str, Any]], Any]


class StepHandlerRegistry:
    """Map AUTOMATED / SCRIPT / SERVICE_CALL step types to handlers"""

    def __init__(self):
        self._handlers: Dict[StepType, StepHandler] = {}

    def register(self, step_type: StepType, handler: StepHandler) -> None:
        """Register (or replace) the handler for a step type"""
        step_type = StepType(step_type)
        if not step_type.uses_handler:
            raise ValidationError(
                f"Step type {step_type.value} does not use a handler",
                details={"step_type": step_type.value}
            )
        self._handlers[step_type] = handler
        logger.info(f"Registered handler for {step_type.value}")

    def execute(
        self,
        step_type: StepType,
        configuration: Dict[str, Any],
        context: Dict[str, Any]
    ) -> HandlerResult:
        """
        Invoke the handler registered for a step type

        Never raises for handler failures: exceptions and malformed return
        values are turned into a HandlerResult carrying the error message.
        """
        step_type = StepType(step_type)
        handler = self._handlers.get(step_type)
        if handler is None:
            return HandlerResult(error=f"No handler registered for step type {step_type.value}")

        try:
            raw = handler(dict(configuration), dict(context))
        except HandlerError as e:
            logger.warning(f"Handler for {step_type.value} failed: {e.message}")
            return HandlerResult(error=e.message)
        except Exception as e:
            # Handler boundary: arbitrary user code must not break the engine
            logger.error(f"Handler for {step_type.value} raised: {e}", exc_info=True)
            return HandlerResult(error=f"{type(e).__name__}: {e}")

        try:
            return self._normalize(raw)
        except (TypeError, ValueError) as e:
            # pydantic ValidationError is a ValueError
            logger.error(f"Handler for {step_type.value} returned an invalid result: {e}")
            return HandlerResult(error=f"Handler returned invalid result: {e}")

    def _normalize(self, raw: Any) -> HandlerResult:
        if isinstance(raw, HandlerResult):
            return raw
        if raw is None:
            return HandlerResult()
        if isinstance(raw, tuple) and len(raw) == 2:
            output, error = raw
            return HandlerResult(output=dict(output or {}), error=error)
        if isinstance(raw, dict):
            return HandlerResult(output=raw)
        return HandlerResult(error=f"Handler returned unsupported result type {type(raw).__name__}")


class ServiceCallHandler:
    """
    SERVICE_CALL handler performing one HTTP request with httpx

    Configuration keys:
        url: Target URL (required)
        method: HTTP method, default POST
        headers: Extra request headers
        body: JSON body sent as-is
        context_keys: Context keys copied into the JSON body
        output_key: Wrap the response JSON under this context key
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self._client = client

    def __call__(self, configuration: Dict[str, Any], context: Dict[str, Any]) -> HandlerResult:
        url = configuration.get("url")
        if not url:
            raise HandlerError("Service call step has no 'url' configured")

        method = str(configuration.get("method", "POST")).upper()
        headers = {"Content-Type": "application/json", **configuration.get("headers", {})}

        body = dict(configuration.get("body") or {})
        for key in configuration.get("context_keys", []):
            if key in context:
                body[key] = context[key]

        try:
            if self._client is not None:
                response = self._send(self._client, method, url, headers, body)
            else:
                with httpx.Client(timeout=self.settings.service_call_timeout_seconds) as client:
                    response = self._send(client, method, url, headers, body)
        except httpx.HTTPError as e:
            logger.error(f"Service call {method} {url} failed: {e}")
            return HandlerResult(error=f"Service call failed: {e}")

        if response.status_code >= 400:
            logger.error(f"Service call error: {response.status_code} - {response.text}")
            return HandlerResult(error=f"Service call returned HTTP {response.status_code}")

        data = self._parse(response)
        output_key = configuration.get("output_key")
        if output_key:
            return HandlerResult(output={output_key: data})
        if isinstance(data, dict):
            return HandlerResult(output=data)
        return HandlerResult(output={"response": data})

    def _send(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any]
    ) -> httpx.Response:
        if method in ("GET", "DELETE"):
            return client.request(method, url, headers=headers, params=body or None)
        return client.request(method, url, headers=headers, json=body)

    def _parse(self, response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text
