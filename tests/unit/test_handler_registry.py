"""Tests for the step handler registry and the HTTP service call handler"""
import json

import httpx
import pytest

from flowcore.domain.enums import StepType
from flowcore.domain.errors import HandlerError, ValidationError
from flowcore.domain.models import HandlerResult
from flowcore.services.handler_registry import ServiceCallHandler, StepHandlerRegistry


@pytest.fixture
def registry():
    return StepHandlerRegistry()


class TestRegistry:

    @pytest.mark.parametrize("returned,expected", [
        (None, HandlerResult()),
        ({"a": 1}, HandlerResult(output={"a": 1})),
        (({"a": 1}, None), HandlerResult(output={"a": 1})),
        ((None, "bad input"), HandlerResult(error="bad input")),
        (HandlerResult(output={"b": 2}), HandlerResult(output={"b": 2})),
    ])
    def test_result_normalization(self, registry, returned, expected):
        registry.register(StepType.SCRIPT, lambda configuration, context: returned)
        assert registry.execute(StepType.SCRIPT, {}, {}) == expected

    def test_unsupported_return_type(self, registry):
        registry.register(StepType.SCRIPT, lambda configuration, context: 42)
        result = registry.execute(StepType.SCRIPT, {}, {})
        assert not result.succeeded
        assert "int" in result.error

    def test_exceptions_become_errors(self, registry):
        def explode(configuration, context):
            raise KeyError("account")

        registry.register(StepType.AUTOMATED, explode)
        result = registry.execute(StepType.AUTOMATED, {}, {})
        assert result.error == "KeyError: 'account'"

    def test_handler_error_message_is_kept(self, registry):
        def refuse(configuration, context):
            raise HandlerError("quota exceeded")

        registry.register(StepType.AUTOMATED, refuse)
        assert registry.execute("AUTOMATED", {}, {}).error == "quota exceeded"

    def test_handler_receives_copies(self, registry):
        def mutate(configuration, context):
            context["mutated"] = True
            return {}

        context = {"x": 1}
        registry.register(StepType.AUTOMATED, mutate)
        registry.execute(StepType.AUTOMATED, {}, context)
        assert context == {"x": 1}

    def test_missing_handler(self, registry):
        result = registry.execute(StepType.SERVICE_CALL, {}, {})
        assert "No handler registered" in result.error

    @pytest.mark.parametrize("step_type", [StepType.HUMAN_TASK, StepType.GATEWAY, StepType.TIMER])
    def test_only_handler_types_register(self, registry, step_type):
        with pytest.raises(ValidationError):
            registry.register(step_type, lambda configuration, context: None)

    @pytest.mark.parametrize("returned", [
        ({"a": 1}, 500),
        ("ok", None),
        ([1, 2], None),
    ])
    def test_malformed_result_becomes_error(self, registry, returned):
        registry.register(StepType.SCRIPT, lambda configuration, context: returned)
        result = registry.execute(StepType.SCRIPT, {}, {})
        assert not result.succeeded
        assert result.error.startswith("Handler returned invalid result")

    def test_skipped_result(self, registry):
        registry.register(
            StepType.AUTOMATED,
            lambda configuration, context: HandlerResult(skipped=True, skip_reason="nothing to charge")
        )
        result = registry.execute(StepType.AUTOMATED, {}, {})
        assert result.succeeded
        assert result.skipped
        assert result.skip_reason == "nothing to charge"


class TestServiceCallHandler:

    def make_handler(self, respond, settings):
        client = httpx.Client(transport=httpx.MockTransport(respond))
        return ServiceCallHandler(client=client, settings=settings)

    def test_post_with_context_keys(self, settings):
        requests = []

        def respond(request):
            requests.append(request)
            return httpx.Response(201, json={"ticket": "T-9"})

        handler = self.make_handler(respond, settings)
        result = handler(
            {"url": "https://tickets.example.com", "body": {"queue": "ops"}, "context_keys": ["user", "absent"],
             "headers": {"X-Api-Key": "k"}},
            {"user": "u-1", "other": True}
        )

        assert result.output == {"ticket": "T-9"}
        assert json.loads(requests[0].content) == {"queue": "ops", "user": "u-1"}
        assert requests[0].headers["X-Api-Key"] == "k"

    def test_get_sends_query_params(self, settings):
        requests = []

        def respond(request):
            requests.append(request)
            return httpx.Response(200, json=["a", "b"])

        handler = self.make_handler(respond, settings)
        result = handler({"url": "https://lookup.example.com/items", "method": "get", "body": {"q": "x"}}, {})

        assert requests[0].method == "GET"
        assert requests[0].url.params["q"] == "x"
        assert result.output == {"response": ["a", "b"]}

    def test_http_error_status(self, settings):
        handler = self.make_handler(lambda request: httpx.Response(503, text="down"), settings)
        result = handler({"url": "https://svc.example.com"}, {})
        assert result.error == "Service call returned HTTP 503"

    def test_transport_error(self, settings):
        def respond(request):
            raise httpx.ConnectError("connection refused", request=request)

        handler = self.make_handler(respond, settings)
        result = handler({"url": "https://svc.example.com"}, {})
        assert result.error.startswith("Service call failed")

    def test_empty_body_response(self, settings):
        handler = self.make_handler(lambda request: httpx.Response(204), settings)
        assert handler({"url": "https://svc.example.com", "output_key": "ack"}, {}).output == {"ack": {}}

    def test_missing_url(self, settings):
        handler = self.make_handler(lambda request: httpx.Response(200), settings)
        with pytest.raises(HandlerError):
            handler({}, {})

    def test_missing_url_through_registry(self, registry, settings):
        registry.register(StepType.SERVICE_CALL, self.make_handler(lambda request: httpx.Response(200), settings))
        assert "url" in registry.execute(StepType.SERVICE_CALL, {}, {}).error
