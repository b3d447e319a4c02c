import json

import pytest

from maestro.services.json_utils import (
    ParseFailure,
    extract_json_from_response,
    load_json_object,
    parse_suggestion_payload,
)


def test_extract_json_unwraps_code_fence():
    response = '```json\n{"suggestions": []}\n```'
    assert extract_json_from_response(response) == '{"suggestions": []}'


def test_extract_json_takes_outermost_braces():
    response = 'Sure! Here you go: {"a": {"b": 1}} hope that helps'
    assert extract_json_from_response(response) == '{"a": {"b": 1}}'


def test_extract_json_returns_none_without_object():
    assert extract_json_from_response("no json here") is None


def test_load_json_object_raises_on_garbage():
    with pytest.raises(ParseFailure):
        load_json_object("nothing")
    with pytest.raises(ParseFailure):
        load_json_object("{not valid}")


def test_suggestion_missing_native_clears_all_suggestions():
    payload = parse_suggestion_payload('{"suggestions":[{"target":"Uno"}]}')
    assert payload.suggestions == []


def test_suggestion_payload_reads_optional_fields():
    payload = parse_suggestion_payload(
        json.dumps(
            {
                "suggestions": [{"target": "Uno", "native": "One"}],
                "reengagementSeconds": 12,
                "chatSummary": "  Counting practice.  ",
            }
        )
    )
    assert [(s.target, s.native) for s in payload.suggestions] == [("Uno", "One")]
    assert payload.reengagement_seconds == 12
    assert payload.chat_summary == "Counting practice."


def test_short_reengagement_interval_is_ignored():
    payload = parse_suggestion_payload('{"suggestions": [], "reengagementSeconds": 3}', 5)
    assert payload.reengagement_seconds is None


def test_non_list_suggestions_are_cleared():
    payload = parse_suggestion_payload('{"suggestions": {"target": "Uno", "native": "One"}}')
    assert payload.suggestions == []
