"""Chat model providers for kbchat."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Type

import httpx
import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_openai import ChatOpenAI

from kbchat.errors import ConfigurationError
from kbchat.metrics.observability import get_logger
from kbchat.models import HistoryMessage, LLMConfig, LLMProvider, SamplingConfig
from kbchat.tokens import TokenCounter

LOGGER = get_logger("generation")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

# Both variants speak the OpenAI chat protocol; token usage is approximated with gpt-4's tokenizer.
TOKEN_MODEL_FAMILY = "gpt-4"


@dataclass(frozen=True)
class GenerationConfig:
    """Transport settings shared by chat model providers."""

    timeout_seconds: float = 120.0
    in_container: bool = False
    host_gateway_alias: str = "host.docker.internal"


class ChatModelProvider(Protocol):
    """Generates a completion for a prompt following prior conversation turns."""

    def generate(
        self,
        prompt: str,
        history: Sequence[HistoryMessage] = (),
        sampling: SamplingConfig | None = None,
    ) -> str:
        """Return the model's answer."""

    def count_tokens(self, text: str) -> int:
        ...

    def model_name(self) -> str:
        ...

    def provider_name(self) -> str:
        ...


def rejects_parameter(exc: BaseException, parameter: str) -> bool:
    """True when ``exc`` is a request rejection that names ``parameter``."""

    if not isinstance(exc, openai.BadRequestError):
        return False
    if getattr(exc, "param", None) == parameter:
        return True
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        error = body.get("error", body)
        if isinstance(error, Mapping) and error.get("param") == parameter:
            return True
    message = str(exc).lower()
    return parameter in message and ("unsupported" in message or "not support" in message)


def resolve_self_hosted_base_url(base_url: str, *, in_container: bool, gateway_alias: str) -> str:
    """Point loopback addresses at the host gateway when running in a container, append ``/v1``."""

    raw = base_url.strip()
    if "://" not in raw:
        raw = f"http://{raw}"
    url = httpx.URL(raw)
    if in_container and url.host in LOOPBACK_HOSTS:
        LOGGER.info("generation.loopback_rewritten", original_host=url.host, host=gateway_alias)
        url = url.copy_with(host=gateway_alias)
    resolved = str(url).rstrip("/")
    if not resolved.endswith("/v1"):
        resolved = f"{resolved}/v1"
    return resolved


def to_messages(history: Sequence[HistoryMessage], prompt: str) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for turn in history:
        if turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
        else:
            messages.append(HumanMessage(content=turn.content))
    messages.append(HumanMessage(content=prompt))
    return messages


class _OpenAIProtocolChatModel:
    """Shared ChatOpenAI plumbing: bounded timeout, no automatic retries, temperature shedding."""

    provider = ""

    def __init__(
        self,
        llm_config: LLMConfig,
        config: GenerationConfig | None = None,
        *,
        http_client: httpx.Client | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._llm_config = llm_config
        self._config = config or GenerationConfig()
        self._http_client = http_client
        self._tokens = token_counter or TokenCounter()

    def _connection_kwargs(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _build_model(self, temperature: float | None, max_tokens: int | None) -> ChatOpenAI:
        kwargs: Dict[str, Any] = dict(self._connection_kwargs())
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if self._http_client is not None:
            kwargs["http_client"] = self._http_client
        # Generation may bill tokens even when it fails, so it is never retried automatically.
        return ChatOpenAI(
            model=self._llm_config.model_name,
            timeout=self._config.timeout_seconds,
            max_retries=0,
            **kwargs,
        )

    def _invoke(self, messages: List[BaseMessage], temperature: float | None, max_tokens: int | None) -> str:
        chain = self._build_model(temperature, max_tokens) | StrOutputParser()
        return chain.invoke(messages)

    def generate(
        self,
        prompt: str,
        history: Sequence[HistoryMessage] = (),
        sampling: SamplingConfig | None = None,
    ) -> str:
        sampling = sampling or SamplingConfig()
        messages = to_messages(history, prompt)
        try:
            return self._invoke(messages, sampling.temperature, sampling.max_tokens)
        except openai.BadRequestError as exc:
            if sampling.temperature is None or not rejects_parameter(exc, "temperature"):
                raise
            LOGGER.warning(
                "generation.temperature_rejected",
                provider=self.provider,
                model=self._llm_config.model_name,
                error=str(exc),
            )
        try:
            return self._invoke(messages, None, sampling.max_tokens)
        except Exception as exc:
            LOGGER.error(
                "generation.retry_failed",
                provider=self.provider,
                model=self._llm_config.model_name,
                error=str(exc),
            )
            raise

    def count_tokens(self, text: str) -> int:
        return self._tokens.count_tokens(text, TOKEN_MODEL_FAMILY)

    def model_name(self) -> str:
        return self._llm_config.model_name

    def provider_name(self) -> str:
        return self.provider


class OpenAIChatModel(_OpenAIProtocolChatModel):
    """Hosted API variant; requires the config's API key."""

    provider = LLMProvider.OPENAI.value

    def __init__(self, llm_config: LLMConfig, *args: Any, **kwargs: Any) -> None:
        if not (llm_config.api_key or "").strip():
            raise ConfigurationError("OpenAI API key is required")
        super().__init__(llm_config, *args, **kwargs)

    def _connection_kwargs(self) -> Dict[str, Any]:
        return {"api_key": self._llm_config.api_key}


class OllamaChatModel(_OpenAIProtocolChatModel):
    """Self-hosted variant reached through its OpenAI-compatible ``/v1`` endpoint."""

    provider = LLMProvider.OLLAMA.value

    def __init__(self, llm_config: LLMConfig, *args: Any, **kwargs: Any) -> None:
        if not (llm_config.base_url or "").strip():
            raise ConfigurationError("Ollama base URL is required (e.g., http://localhost:11434)")
        super().__init__(llm_config, *args, **kwargs)
        self._base_url = resolve_self_hosted_base_url(
            llm_config.base_url or "",
            in_container=self._config.in_container,
            gateway_alias=self._config.host_gateway_alias,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _connection_kwargs(self) -> Dict[str, Any]:
        # The server ignores the key but the client requires one.
        return {"api_key": "ollama", "base_url": self._base_url}


class ChatModelFactory:
    """Maps an ``LLMConfig.provider`` to a chat model provider."""

    _PROVIDERS: Mapping[LLMProvider, Type[_OpenAIProtocolChatModel]] = {
        LLMProvider.OPENAI: OpenAIChatModel,
        LLMProvider.OLLAMA: OllamaChatModel,
    }

    def __init__(
        self,
        config: GenerationConfig | None = None,
        *,
        http_client: httpx.Client | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._config = config or GenerationConfig()
        self._http_client = http_client
        self._tokens = token_counter or TokenCounter()

    def create(self, llm_config: LLMConfig) -> ChatModelProvider:
        try:
            provider = LLMProvider(llm_config.provider)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported LLM provider: {llm_config.provider}") from exc
        model_cls = self._PROVIDERS.get(provider)
        if model_cls is None:
            raise ConfigurationError(f"Unsupported LLM provider: {provider.value}")
        if not (llm_config.model_name or "").strip():
            raise ConfigurationError("LLM model name is required")
        return model_cls(
            llm_config,
            self._config,
            http_client=self._http_client,
            token_counter=self._tokens,
        )
