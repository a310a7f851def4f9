"""Tests for dadeumi.llm: provider routing, error classification, retry and cost."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from dadeumi.errors import ContextLengthExceeded, ProviderUnavailableError
from dadeumi.llm import (
    CompletionService,
    RequestOptions,
    build_chat_model,
    complete_with_retry,
    estimate_cost,
    is_context_length_error,
    is_retryable,
)
from conftest import make_completion


class _StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _conversation() -> list[dict]:
    return [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "latest"},
    ]


# --- classification ---

class TestClassification:
    def test_context_length_messages(self):
        assert is_context_length_error(Exception("This model's maximum context length is 8192 tokens"))
        assert is_context_length_error(Exception("prompt is too long: 250000 tokens > 200000 maximum"))
        assert not is_context_length_error(Exception("boom"))

    def test_transient_errors_are_retryable(self):
        assert is_retryable(httpx.ConnectError("connection refused"))
        assert is_retryable(httpx.ReadTimeout("read timed out"))
        assert is_retryable(_StatusError(429))
        assert is_retryable(_StatusError(529))

    def test_context_length_is_retryable(self):
        assert is_retryable(ContextLengthExceeded("too long"))

    def test_permanent_errors_are_not_retryable(self):
        assert not is_retryable(_StatusError(401))
        assert not is_retryable(_StatusError(400))
        assert not is_retryable(ProviderUnavailableError("no key"))

    def test_unknown_errors_are_retryable(self):
        assert is_retryable(RuntimeError("socket hang up"))

    def test_interrupt_is_not_retryable(self):
        assert not is_retryable(KeyboardInterrupt())


# --- complete_with_retry ---

class TestCompleteWithRetry:
    def _service(self, side_effect):
        service = MagicMock()
        service.complete.side_effect = side_effect
        return service

    def test_succeeds_on_first_try(self):
        service = self._service([make_completion("ok")])
        result = complete_with_retry(
            service, _conversation(), RequestOptions(model="m"), max_retries=3, retry_delay=0
        )
        assert result.text == "ok"
        assert service.complete.call_count == 1

    def test_retries_transient_error_and_reports_attempt(self):
        service = self._service([httpx.ConnectError("refused"), make_completion("ok")])
        on_retry = MagicMock()

        result = complete_with_retry(
            service, _conversation(), RequestOptions(model="m"), max_retries=3, retry_delay=0, on_retry=on_retry
        )

        assert result.text == "ok"
        assert service.complete.call_count == 2
        on_retry.assert_called_once()
        exc, attempt = on_retry.call_args.args
        assert isinstance(exc, httpx.ConnectError)
        assert attempt == 1

    def test_exhausted_retries_reraise_original(self):
        service = self._service(httpx.ConnectError("refused"))
        with pytest.raises(httpx.ConnectError):
            complete_with_retry(service, _conversation(), RequestOptions(model="m"), max_retries=2, retry_delay=0)
        assert service.complete.call_count == 3

    def test_permanent_error_raises_immediately(self):
        service = self._service(_StatusError(401))
        with pytest.raises(_StatusError):
            complete_with_retry(service, _conversation(), RequestOptions(model="m"), max_retries=3, retry_delay=0)
        assert service.complete.call_count == 1

    def test_context_length_prunes_before_retry(self):
        messages = _conversation()
        service = self._service([ContextLengthExceeded("too long"), make_completion("ok")])

        complete_with_retry(service, messages, RequestOptions(model="m"), max_retries=3, retry_delay=0)

        assert [m["content"] for m in messages] == ["sys", "first", "latest"]

    def test_context_length_gets_pruned_retry_without_retry_budget(self):
        messages = _conversation()
        service = self._service([ContextLengthExceeded("too long"), make_completion("ok")])

        result = complete_with_retry(service, messages, RequestOptions(model="m"), max_retries=0, retry_delay=0)

        assert result.text == "ok"
        assert service.complete.call_count == 2
        assert [m["content"] for m in messages] == ["sys", "first", "latest"]

    def test_repeated_context_length_error_gives_up_after_pruned_retry(self):
        service = self._service(ContextLengthExceeded("too long"))
        with pytest.raises(ContextLengthExceeded):
            complete_with_retry(service, _conversation(), RequestOptions(model="m"), max_retries=0, retry_delay=0)
        assert service.complete.call_count == 2

    def test_transient_error_without_retry_budget_raises_at_once(self):
        service = self._service(httpx.ConnectError("refused"))
        with pytest.raises(httpx.ConnectError):
            complete_with_retry(service, _conversation(), RequestOptions(model="m"), max_retries=0, retry_delay=0)
        assert service.complete.call_count == 1


# --- estimate_cost ---

class TestEstimateCost:
    def test_exact_model(self, mock_config):
        assert estimate_cost("test-model", 1_000_000, 500_000) == pytest.approx(2.0)

    def test_prefix_match(self, mock_config):
        assert estimate_cost("test-model-2025", 2_000_000, 0) == pytest.approx(2.0)

    def test_unknown_model_is_free_with_warning(self, mock_config, capsys):
        assert estimate_cost("mystery", 1000, 1000) == 0.0
        assert "no pricing data" in capsys.readouterr().err


# --- build_chat_model ---

class TestBuildChatModel:
    @patch("dadeumi.llm.ChatAnthropic")
    def test_claude_routes_to_anthropic(self, MockLLM, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test")
        build_chat_model(RequestOptions(model="claude-3-7-sonnet-latest", max_output_tokens=1000))
        kwargs = MockLLM.call_args.kwargs
        assert kwargs["model"] == "claude-3-7-sonnet-latest"
        assert kwargs["max_tokens"] == 1000

    @patch("dadeumi.llm.ChatGoogleGenerativeAI")
    def test_gemini_routes_to_google(self, MockLLM, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "test")
        build_chat_model(RequestOptions(model="gemini-2.0-flash"))
        assert MockLLM.call_args.kwargs["model"] == "gemini-2.0-flash"

    @patch("dadeumi.llm.ChatOpenAI")
    def test_reasoning_model_drops_temperature(self, MockLLM, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test")
        build_chat_model(RequestOptions(model="o3-mini", reasoning_effort="high"))
        kwargs = MockLLM.call_args.kwargs
        assert kwargs["reasoning_effort"] == "high"
        assert "temperature" not in kwargs

    @patch("dadeumi.llm.ChatOpenAI")
    def test_json_mode_requests_json_object(self, MockLLM, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test")
        build_chat_model(RequestOptions(model="gpt-4o-mini", temperature=0.0, json_mode=True))
        assert MockLLM.call_args.kwargs["model_kwargs"] == {"response_format": {"type": "json_object"}}

    def test_missing_key_raises_provider_unavailable(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ProviderUnavailableError, match="OPENAI_API_KEY"):
            build_chat_model(RequestOptions(model="gpt-4o"))


# --- CompletionService ---

class TestCompletionService:
    def _llm(self, content="", usage=None, side_effect=None):
        llm = MagicMock()
        if side_effect is not None:
            llm.invoke.side_effect = side_effect
        else:
            response = MagicMock()
            response.content = content
            response.usage_metadata = usage
            llm.invoke.return_value = response
        return llm

    @patch("dadeumi.llm.build_chat_model")
    def test_returns_text_and_usage(self, mock_build):
        mock_build.return_value = self._llm("hello", {"input_tokens": 12, "output_tokens": 3})

        result = CompletionService().complete([{"role": "user", "content": "hi"}], RequestOptions(model="m"))

        assert result.text == "hello"
        assert (result.input_tokens, result.output_tokens) == (12, 3)
        assert result.model == "m"
        assert result.duration >= 0

    @patch("dadeumi.llm.build_chat_model")
    def test_flattens_content_blocks(self, mock_build):
        blocks = [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}]
        mock_build.return_value = self._llm(blocks, None)

        result = CompletionService().complete([{"role": "user", "content": "hi"}], RequestOptions(model="m"))

        assert result.text == "Hello"
        assert result.input_tokens == 0

    @patch("dadeumi.llm.build_chat_model")
    def test_wraps_context_errors(self, mock_build):
        mock_build.return_value = self._llm(side_effect=Exception("prompt is too long"))
        with pytest.raises(ContextLengthExceeded):
            CompletionService().complete([{"role": "user", "content": "hi"}], RequestOptions(model="m"))

    @patch("dadeumi.llm.build_chat_model")
    def test_other_errors_propagate_unchanged(self, mock_build):
        mock_build.return_value = self._llm(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(httpx.ConnectError):
            CompletionService().complete([{"role": "user", "content": "hi"}], RequestOptions(model="m"))
