import json

import pytest

from tcm_pipeline.errors import JSONRepairError
from tcm_pipeline.json_repair import (
    close_truncated,
    drop_orphan_strings,
    isolate_outer_value,
    parse_json_lenient,
    repair_json,
    strip_code_fences,
)


@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1, "b": [1, 2, {"c": "d"}]}',
        '{"observation": "a \\"quoted\\" word, and {braces}"}',
        "[1, 2, 3]",
        '{"nested": {"empty": {}, "list": []}}',
    ],
)
def test_valid_json_is_returned_unchanged(text):
    assert repair_json(text) == text
    assert parse_json_lenient(text) == json.loads(text)


def test_orphan_string_in_key_position_is_dropped():
    text = '{"key": "value", "summary": "text", "orphan text"}'
    assert parse_json_lenient(text) == {"key": "value", "summary": "text"}


def test_orphan_string_between_members_is_dropped():
    text = '{"a": "b", "stray words", "c": 1}'
    assert json.loads(drop_orphan_strings(text)) == {"a": "b", "c": 1}


def test_arrays_of_strings_are_not_touched_by_orphan_removal():
    text = '{"issues": ["damp", "heat"]}'
    assert drop_orphan_strings(text) == text


def test_code_fences_are_stripped():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert parse_json_lenient('```\n{"a": 1}\n```') == {"a": 1}


def test_prose_around_the_object_is_discarded():
    text = 'Here is the analysis: {"a": [1, 2]} Hope this helps! {not json}'
    assert isolate_outer_value(text) == '{"a": [1, 2]}'
    assert parse_json_lenient(text) == {"a": [1, 2]}


def test_trailing_commas_are_removed():
    assert parse_json_lenient('{"a": 1, "b": [1, 2,],}') == {"a": 1, "b": [1, 2]}


def test_literal_newlines_inside_strings_are_flattened():
    assert parse_json_lenient('{"a": "line one\nline two"}') == {"a": "line one line two"}


def test_truncated_output_is_closed():
    text = '{"observation": "Pale tongue", "issues": ["damp'
    assert close_truncated(text) == '{"observation": "Pale tongue", "issues": ["damp"]}'
    assert parse_json_lenient(text) == {"observation": "Pale tongue", "issues": ["damp"]}


def test_unrecoverable_text_raises():
    with pytest.raises(JSONRepairError):
        parse_json_lenient("The tongue looks pale with a white coat.")
