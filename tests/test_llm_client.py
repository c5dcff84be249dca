"""Tests for complete_text() bare LLM call."""

from unittest.mock import AsyncMock, MagicMock, patch

from chatmem.config import settings
from chatmem.llm.client import complete_text


def _mock_client(text: str = "response") -> MagicMock:
    mock_response = MagicMock()
    mock_response.content = [MagicMock(text=text)]

    mock_client = MagicMock()
    mock_client.messages.create = AsyncMock(return_value=mock_response)
    return mock_client


async def test_complete_text_basic() -> None:
    mock_client = _mock_client("hello world")

    with patch("chatmem.llm.client._get_client", return_value=mock_client):
        result = await complete_text([{"role": "user", "content": "hi"}])

    assert result == "hello world"
    mock_client.messages.create.assert_awaited_once()
    call_kwargs = mock_client.messages.create.call_args.kwargs
    assert call_kwargs["messages"] == [{"role": "user", "content": "hi"}]
    assert call_kwargs["model"] == settings.summary_model
    assert call_kwargs["max_tokens"] == 1024


async def test_complete_text_with_system() -> None:
    mock_client = _mock_client()

    with patch("chatmem.llm.client._get_client", return_value=mock_client):
        await complete_text([{"role": "user", "content": "hi"}], system="Summarize.")

    call_kwargs = mock_client.messages.create.call_args.kwargs
    assert call_kwargs["system"] == "Summarize."


async def test_complete_text_with_custom_model() -> None:
    mock_client = _mock_client()

    with patch("chatmem.llm.client._get_client", return_value=mock_client):
        await complete_text(
            [{"role": "user", "content": "hi"}], model="claude-sonnet-4-5", max_tokens=200
        )

    call_kwargs = mock_client.messages.create.call_args.kwargs
    assert call_kwargs["model"] == "claude-sonnet-4-5"
    assert call_kwargs["max_tokens"] == 200


async def test_complete_text_omits_system_when_none() -> None:
    mock_client = _mock_client()

    with patch("chatmem.llm.client._get_client", return_value=mock_client):
        await complete_text([{"role": "user", "content": "hi"}])

    call_kwargs = mock_client.messages.create.call_args.kwargs
    assert "system" not in call_kwargs
