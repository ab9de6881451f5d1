import json

import pytest

from utils import extract_json_object, first_sentences, parse_llm_json, recover_truncated_json, strip_code_fences, strip_html_tags


def test_plain_json_parses():
    assert parse_llm_json('{"summary": "ok"}') == {"summary": "ok"}


def test_code_fenced_json_parses():
    text = '```json\n{"summary": "fenced", "translatedTitle": "T"}\n```'
    assert strip_code_fences(text).startswith("{")
    assert parse_llm_json(text) == {"summary": "fenced", "translatedTitle": "T"}


def test_trailing_garbage_after_complete_object_is_cut():
    text = '{"summary": "has a } brace and \\"quotes\\""} and then {"formattedContent": "cut off'
    recovered = recover_truncated_json(text)
    assert recovered is not None
    assert json.loads(recovered) == {"summary": 'has a } brace and "quotes"'}
    assert parse_llm_json(text) == {"summary": 'has a } brace and "quotes"'}


def test_prose_around_object_falls_back_to_brace_span():
    text = 'Sure! Here is the JSON: {"summary": "s", "notificationContent": "n"} Hope this helps.'
    assert extract_json_object(text) == '{"summary": "s", "notificationContent": "n"}'
    assert parse_llm_json(text) == {"summary": "s", "notificationContent": "n"}


@pytest.mark.parametrize("text", [
    None,
    "",
    "no json here at all",
    '{"formattedContent": "truncated in the middle of a str',
    "{{{{",
    "}{",
    '{"a": [1, 2, }',
    "[" * 100000,
    '{"a":' * 100000,
])
def test_unrecoverable_input_returns_none_without_raising(text):
    assert parse_llm_json(text) is None


def test_recovered_output_is_always_parseable():
    samples = [
        '{"a": 1}}}',
        'xx {"a": {"b": [1, 2]}} yy {"c":',
        '{"a": "\\\\"} tail',
    ]
    for sample in samples:
        recovered = recover_truncated_json(sample)
        assert recovered is None or json.loads(recovered) is not None


def test_first_sentences_adds_period_only_when_more_followed():
    assert first_sentences("One. Two! Three? Four.") == "One. Two. Three."
    assert first_sentences("Only one sentence") == "Only one sentence"


def test_strip_html_tags_drops_scripts_and_collapses_whitespace():
    html = "<div><script>var x = 1;</script><p>Hello\n\n   <b>world</b></p><style>p{}</style></div>"
    assert strip_html_tags(html) == "Hello world"
