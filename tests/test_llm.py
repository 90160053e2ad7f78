import asyncio

from autoservice.chat.llm import ChatModel, user_content
from autoservice.config import AssistantSettings
from autoservice.errors import RateLimited
from autoservice.pipeline.retry import RetryPolicy

from conftest import FakeClient, completion

SETTINGS = AssistantSettings(
    provider="openrouter",
    api_key="test",
    base_url="https://openrouter.ai/api/v1",
    chat_model="chat-model",
    extraction_model="extract-model",
    extraction_strategy="direct_vision",
    ocr_backend="none",
    ocr_api_key=None,
)


def test_user_content_attaches_images_as_data_uris():
    assert user_content("hi") == "hi"
    parts = user_content("look", [b"\xff\xd8\xffjpeg"])
    assert parts[0] == {"type": "text", "text": "look"}
    assert parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_complete_json_uses_schema_and_extraction_model():
    client = FakeClient([completion('{"a": 1}'), completion('{"a": 2}')])
    model = ChatModel(SETTINGS, client=client)
    strict = asyncio.run(model.complete_json("sys", "text", schema_name="invoice", schema={"type": "object"}))
    lenient = asyncio.run(model.complete_json("sys", "text", schema_name="invoice"))
    assert (strict, lenient) == ('{"a": 1}', '{"a": 2}')
    first, second = client.completions.calls
    assert first["model"] == "extract-model"
    assert first["response_format"]["type"] == "json_schema"
    assert first["response_format"]["json_schema"]["name"] == "invoice"
    assert second["response_format"] == {"type": "json_object"}


def test_chat_calls_retry_on_rate_limit():
    client = FakeClient([RateLimited("busy"), completion("hello")])
    model = ChatModel(SETTINGS, client=client, policy=RetryPolicy(max_attempts=2, delays=(0.0,)))
    assert asyncio.run(model.complete("sys", [{"role": "user", "content": "hi"}])) == "hello"
    assert len(client.completions.calls) == 2
    assert client.completions.calls[0]["model"] == "chat-model"
