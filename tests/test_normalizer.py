import asyncio
import json

import pytest

import llm_client
import normalizer
from config import config
from conftest import LONG_PARAGRAPH, completion_returning
from errors import LLMRateLimitError
from normalizer import ContentNormalizer, fallback_notification

PROMPTS = {
    "normalizer": {
        "system": "Format the article. $language_instruction",
        "user": "Title: $title\n\n$content",
        "language": {"auto": "Keep the original language.", "translate": "Write everything in $language."},
    }
}

RAW = "<p>" + LONG_PARAGRAPH * 3 + "</p>"
TITLE = "Council approves new transit plan"


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(normalizer, "sleep", _sleep)
    return delays


def good_response(**overrides):
    data = {
        "formattedContent": "## 🚌 Transit plan\n\n" + LONG_PARAGRAPH * 3,
        "summary": "The council approved a plan.",
        "notificationContent": "New bus lines are coming.",
        "translatedTitle": "Transit plan approved",
    }
    data.update(overrides)
    return json.dumps(data)


def make_normalizer(completion, **kwargs):
    return ContentNormalizer(completion=completion, prompts=PROMPTS, retry_delay_base=1.0, **kwargs)


@pytest.mark.asyncio
async def test_valid_response_is_used():
    completion = completion_returning(good_response())
    result = await make_normalizer(completion).normalize(RAW, TITLE)

    assert not result.used_fallback
    assert result.formatted_content.startswith("## 🚌 Transit plan")
    assert result.summary == "The council approved a plan."
    assert result.translated_title == "Transit plan approved"
    assert completion.calls[0]["temperature"] == 0.3
    assert completion.calls[0]["purpose"] == "normalize"


@pytest.mark.asyncio
async def test_target_language_is_named_in_system_prompt():
    completion = completion_returning(good_response())
    await make_normalizer(completion).normalize(RAW, TITLE, target_language="pt")
    system = completion.calls[0]["messages"][0]["content"]
    assert "Portuguese" in system

    completion = completion_returning(good_response())
    await make_normalizer(completion).normalize(RAW, TITLE, target_language="auto")
    assert "Keep the original language." in completion.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_short_formatted_content_is_replaced_by_stripped_original():
    completion = completion_returning(good_response(formattedContent="Too short."))
    result = await make_normalizer(completion).normalize(RAW, TITLE)

    assert not result.used_fallback
    assert result.formatted_content == LONG_PARAGRAPH.strip() + " " + LONG_PARAGRAPH.strip() + " " + LONG_PARAGRAPH.strip()
    assert "<p>" not in result.formatted_content


@pytest.mark.asyncio
async def test_formatted_content_under_ten_percent_of_input_is_replaced():
    huge = "<p>" + LONG_PARAGRAPH * 40 + "</p>"
    completion = completion_returning(good_response(formattedContent="x" * 300))
    result = await make_normalizer(completion).normalize(huge, TITLE)
    assert result.formatted_content != "x" * 300
    assert len(result.formatted_content) > 300


@pytest.mark.asyncio
async def test_missing_fields_are_filled_and_long_fields_capped():
    completion = completion_returning(json.dumps({
        "formattedContent": LONG_PARAGRAPH * 3,
        "notificationContent": "n" * 250,
        "translatedTitle": "t" * 150,
    }))
    result = await make_normalizer(completion).normalize(RAW, TITLE)

    assert result.summary.startswith("The city council approved a new transit plan on Tuesday")
    assert len(result.notification_content) == 200
    assert len(result.translated_title) == 120


@pytest.mark.asyncio
async def test_unparseable_response_yields_fallback_without_retry():
    completion = completion_returning("I cannot produce JSON today")
    result = await make_normalizer(completion).normalize(RAW, TITLE)

    assert result.used_fallback
    assert result.notification_content == f"New article: {TITLE}"
    assert result.translated_title == TITLE
    assert len(completion.calls) == 1


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(no_sleep):
    completion = completion_returning(asyncio.TimeoutError(), LLMRateLimitError(5), good_response())
    result = await make_normalizer(completion).normalize(RAW, TITLE)

    assert not result.used_fallback
    assert len(completion.calls) == 3
    assert no_sleep == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_return_fallback(no_sleep):
    completion = completion_returning(None)
    result = await make_normalizer(completion, max_retries=2).normalize(RAW, TITLE)

    assert result.used_fallback
    assert len(completion.calls) == 3
    assert result.summary == "The city council approved a new transit plan on Tuesday after months of public hearings. The plan adds three bus lines and extends service hours on weekends. Officials said the first routes should open before the end of the year."


def test_fallback_notification_truncates_long_titles():
    title = "A" * 200
    assert fallback_notification(title) == "New article: " + "A" * 150 + "..."
    assert fallback_notification("Short") == "New article: Short"


@pytest.mark.asyncio
async def test_deeply_nested_response_degrades_to_fallback():
    completion = completion_returning('{"a":' * 100000)
    result = await make_normalizer(completion, max_retries=0).normalize(RAW, TITLE)

    assert result.used_fallback
    assert result.translated_title == TITLE


@pytest.mark.asyncio
async def test_missing_api_key_skips_retries(monkeypatch, no_sleep):
    monkeypatch.setattr(llm_client, "_client", None)
    monkeypatch.setattr(config, "OPENAI_API_KEY", None)
    result = await ContentNormalizer(prompts=PROMPTS, max_retries=2).normalize(RAW, TITLE)

    assert result.used_fallback
    assert no_sleep == []
