from __future__ import annotations

import json

import httpx
import openai
import pytest

from kbchat.errors import ConfigurationError
from kbchat.models import HistoryMessage, LLMConfig, LLMProvider, SamplingConfig
from kbchat.services.generation import (
    ChatModelFactory,
    GenerationConfig,
    OllamaChatModel,
    OpenAIChatModel,
    resolve_self_hosted_base_url,
)


def _completion(content: str) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def _rejection(param: str) -> dict:
    return {
        "error": {
            "message": f"Unsupported parameter: '{param}' is not supported with this model.",
            "type": "invalid_request_error",
            "param": param,
            "code": "unsupported_parameter",
        }
    }


class RecordingHandler:
    def __init__(self, *responses: httpx.Response) -> None:
        self._responses = list(responses)
        self.bodies: list[dict] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(json.loads(request.content))
        return self._responses.pop(0)


def _client(handler: RecordingHandler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_temperature_rejection_retries_once_without_temperature(openai_config):
    handler = RecordingHandler(
        httpx.Response(400, json=_rejection("temperature")),
        httpx.Response(200, json=_completion("Thirty days.")),
    )
    model = OpenAIChatModel(openai_config, http_client=_client(handler))

    answer = model.generate("When are invoices due?", sampling=SamplingConfig(temperature=0.2, max_tokens=64))

    assert answer == "Thirty days."
    assert len(handler.bodies) == 2
    assert handler.bodies[0]["temperature"] == 0.2
    assert handler.bodies[1].get("temperature") is None
    assert handler.requests[0].headers["authorization"] == "Bearer sk-test"


def test_second_failure_after_temperature_retry_propagates(openai_config):
    handler = RecordingHandler(
        httpx.Response(400, json=_rejection("temperature")),
        httpx.Response(400, json=_rejection("temperature")),
    )
    model = OpenAIChatModel(openai_config, http_client=_client(handler))

    with pytest.raises(openai.BadRequestError):
        model.generate("question", sampling=SamplingConfig(temperature=0.2))
    assert len(handler.bodies) == 2


def test_other_rejections_are_not_retried(openai_config):
    handler = RecordingHandler(httpx.Response(400, json=_rejection("max_tokens")))
    model = OpenAIChatModel(openai_config, http_client=_client(handler))

    with pytest.raises(openai.BadRequestError):
        model.generate("question", sampling=SamplingConfig(temperature=0.2, max_tokens=10))
    assert len(handler.bodies) == 1


def test_server_errors_are_never_retried(openai_config):
    handler = RecordingHandler(httpx.Response(500, json={"error": {"message": "boom", "type": "server_error"}}))
    model = OpenAIChatModel(openai_config, http_client=_client(handler))

    with pytest.raises(openai.InternalServerError):
        model.generate("question", sampling=SamplingConfig(temperature=0.2))
    assert len(handler.bodies) == 1


def test_history_is_sent_as_chat_turns_before_prompt(openai_config):
    handler = RecordingHandler(httpx.Response(200, json=_completion("ok")))
    model = OpenAIChatModel(openai_config, http_client=_client(handler))
    history = [
        HistoryMessage(role="user", content="Hi"),
        HistoryMessage(role="assistant", content="Hello!"),
    ]

    model.generate("Context and question", history)

    messages = handler.bodies[0]["messages"]
    assert [message["role"] for message in messages] == ["user", "assistant", "user"]
    assert messages[-1]["content"] == "Context and question"


def test_hosted_model_requires_api_key():
    with pytest.raises(ConfigurationError, match="API key"):
        OpenAIChatModel(LLMConfig(provider=LLMProvider.OPENAI, model_name="gpt-4o-mini", api_key=""))


def test_self_hosted_model_requires_base_url():
    with pytest.raises(ConfigurationError, match="base URL"):
        OllamaChatModel(LLMConfig(provider=LLMProvider.OLLAMA, model_name="llama3"))


def test_self_hosted_model_reaches_host_gateway_from_container():
    handler = RecordingHandler(httpx.Response(200, json=_completion("local answer")))
    model = OllamaChatModel(
        LLMConfig(provider=LLMProvider.OLLAMA, model_name="llama3", base_url="http://localhost:11434"),
        GenerationConfig(in_container=True),
        http_client=_client(handler),
    )

    assert model.base_url == "http://host.docker.internal:11434/v1"
    assert model.generate("question") == "local answer"
    request = handler.requests[0]
    assert request.url.host == "host.docker.internal"
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer ollama"


@pytest.mark.parametrize(
    ("base_url", "in_container", "expected"),
    [
        ("http://localhost:11434", True, "http://host.docker.internal:11434/v1"),
        ("http://127.0.0.1:11434/", True, "http://host.docker.internal:11434/v1"),
        ("http://localhost:11434", False, "http://localhost:11434/v1"),
        ("http://ollama.internal:11434/v1", True, "http://ollama.internal:11434/v1"),
        ("gpu-box:11434", False, "http://gpu-box:11434/v1"),
    ],
)
def test_resolve_self_hosted_base_url(base_url, in_container, expected):
    assert (
        resolve_self_hosted_base_url(base_url, in_container=in_container, gateway_alias="host.docker.internal")
        == expected
    )


def test_factory_rejects_unknown_provider():
    factory = ChatModelFactory()
    with pytest.raises(ConfigurationError, match="Unsupported LLM provider"):
        factory.create(LLMConfig(provider="ANTHROPIC", model_name="x", api_key="k"))  # type: ignore[arg-type]


def test_factory_builds_variant_per_provider(openai_config):
    factory = ChatModelFactory(GenerationConfig(in_container=False))
    hosted = factory.create(openai_config)
    local = factory.create(LLMConfig(provider=LLMProvider.OLLAMA, model_name="llama3", base_url="localhost:11434"))

    assert hosted.provider_name() == "OPENAI"
    assert local.provider_name() == "OLLAMA"
    assert local.model_name() == "llama3"
    assert hosted.count_tokens("") == 0
