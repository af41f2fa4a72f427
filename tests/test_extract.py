"""Tests for JSON extraction from model replies."""

import json

from mission_control.core.extract import MAX_EXTRACT_LENGTH, extract_json


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"question": "Scope?"}') == {"question": "Scope?"}

    def test_surrounding_whitespace(self):
        assert extract_json('\n  {"a": 1}  \n') == {"a": 1}

    def test_fenced_block_inside_prose(self):
        obj = {"question": "Which audience?", "options": [{"id": "a", "label": "Devs"}]}
        text = f"Sure! Here is my next question:\n```json\n{json.dumps(obj)}\n```\nLet me know."
        assert extract_json(text) == obj

    def test_fence_without_language_tag(self):
        assert extract_json('Result:\n```\n{"status": "complete"}\n```') == {"status": "complete"}

    def test_braces_inside_prose(self):
        text = 'I think this works: {"status": "complete", "spec": {"title": "X"}} Thanks!'
        assert extract_json(text) == {"status": "complete", "spec": {"title": "X"}}

    def test_no_json(self):
        assert extract_json("I need a moment to think about this.") is None

    def test_empty_string(self):
        assert extract_json("") is None

    def test_invalid_json(self):
        assert extract_json("{not: valid, json}") is None

    def test_array_is_not_an_object(self):
        assert extract_json("[1, 2, 3]") is None

    def test_two_objects_in_prose(self):
        # First brace to last brace spans both objects, which is not valid JSON.
        assert extract_json('one {"a": 1} and two {"b": 2}') is None

    def test_bad_fence_falls_back_to_braces(self):
        text = '```json\nnot json\n``` but here: {"a": 1}'
        assert extract_json(text) == {"a": 1}

    def test_oversized_input_refused(self):
        text = '{"a": "' + "x" * MAX_EXTRACT_LENGTH + '"}'
        assert extract_json(text) is None

    def test_deeply_nested_input_is_not_an_error(self):
        assert extract_json("[" * 100000) is None
        assert extract_json('{"a": ' + "[" * 100000 + "}") is None

    def test_completion_in_prose_and_fence(self):
        obj = {
            "status": "complete",
            "spec": {
                "title": "Build login",
                "summary": "Email and password login",
                "deliverables": ["Login form"],
                "success_criteria": ["Users can sign in"],
                "constraints": {"deadline": "Friday"},
            },
            "agents": [{"name": "Frontend Dev", "role": "Builds UI", "instructions": "Use the kit"}],
            "execution_plan": {"approach": "Iterate", "steps": ["Build form", "Wire API"]},
        }
        text = f"Planning is done.\n\n```json\n{json.dumps(obj, indent=2)}\n```\n\nGood luck!"
        assert extract_json(text) == obj
