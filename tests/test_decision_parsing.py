"""Model-output parsing: fences, trailing commas, invalid actions, recovery.

Run:
  pytest tests/test_decision_parsing.py

No network or DB required.
"""

import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.agents.decision import (  # noqa: E402
    extract_json_object,
    parse_decision,
    strip_code_fences,
    strip_trailing_commas,
)


def test_plain_json_decision():
    d = parse_decision(
        '{"action":"buy","params":{"tokenAddress":"0xabc","usdcAmount":"5.0"},'
        '"reasoning":"volume rising","confidence":0.8}'
    )
    assert d.action == "buy"
    assert d.params == {"tokenAddress": "0xabc", "usdcAmount": "5.0"}
    assert d.reasoning == "volume rising"
    assert d.confidence == 0.8


def test_fenced_json_with_language_tag():
    text = '```json\n{"action":"wait","params":{"reason":"quiet"},"reasoning":"r","confidence":0.3}\n```'
    d = parse_decision(text)
    assert d.action == "wait"
    assert d.params["reason"] == "quiet"


def test_surrounding_prose_is_ignored():
    text = 'Sure! Here is my decision:\n{"action":"discover","params":{}}\nGood luck.'
    d = parse_decision(text)
    assert d.action == "discover"
    assert d.reasoning == "No reasoning provided"
    assert d.confidence == 0.5


def test_trailing_commas_are_tolerated():
    d = parse_decision('{"action":"sell","params":{"tokenAddress":"0x1","tokenAmount":"1.0",},}')
    assert d.action == "sell"
    assert d.params["tokenAmount"] == "1.0"


def test_action_is_case_insensitive():
    assert parse_decision('{"action":"  BUY ","params":{}}').action == "buy"


def test_missing_action_downgrades_to_wait():
    d = parse_decision('{"params":{"tokenAddress":"0x1"}}')
    assert d.action == "wait"
    assert d.params == {"reason": "Invalid action"}
    assert d.reasoning == "Invalid action: None"
    assert d.confidence == 0.0


def test_unknown_action_downgrades_to_wait():
    d = parse_decision('{"action":"yolo","params":{}}')
    assert d.action == "wait"
    assert d.reasoning == "Invalid action: yolo"


def test_no_json_at_all():
    d = parse_decision("I think you should buy something.")
    assert d.action == "wait"
    assert d.params == {"reason": "Invalid response format"}
    assert d.reasoning == "No JSON found in AI response"


def test_empty_and_none_input():
    assert parse_decision("").params["reason"] == "Invalid response format"
    assert parse_decision(None).params["reason"] == "Invalid response format"


def test_broken_json_recovers_valid_action():
    d = parse_decision('{"action": "buy", "params": {tokenAddress: 0x1}}')
    assert d.action == "buy"
    assert d.params == {}
    assert d.reasoning == "JSON parse error - using extracted action"
    assert d.confidence == 0.5


def test_broken_json_without_valid_action():
    d = parse_decision('{"action": "moon", oops}')
    assert d.action == "wait"
    assert d.params == {"reason": "Parse error"}
    assert d.reasoning.startswith("Failed to parse AI response:")


def test_non_dict_params_become_empty():
    d = parse_decision('{"action":"analyze","params":["0x1"]}')
    assert d.action == "analyze"
    assert d.params == {}


def test_confidence_is_clamped():
    assert parse_decision('{"action":"wait","confidence":7}').confidence == 1.0
    assert parse_decision('{"action":"wait","confidence":-2}').confidence == 0.0
    assert parse_decision('{"action":"wait","confidence":"high"}').confidence == 0.5


def test_stage_helpers():
    assert strip_code_fences("```\n{}\n```") == "{}"
    assert strip_code_fences("  {}  ") == "{}"
    assert extract_json_object("a {x} b {y} c") == "{x}"
    assert extract_json_object('pre {"s": "}{", "n": {"k": "\\"}"}} post}') == '{"s": "}{", "n": {"k": "\\"}"}}'
    assert extract_json_object("{never closed") is None
    assert extract_json_object("no braces") is None
    assert strip_trailing_commas('{"a":[1,2,],}') == '{"a":[1,2]}'


def test_first_object_wins_over_later_braces_in_prose():
    d = parse_decision(
        '{"action":"buy","params":{"tokenAddress":"0xabc","usdcAmount":"5.0"},'
        '"reasoning":"momentum","confidence":0.7}\n'
        'Alternative if that fails: {"action":"wait"}'
    )
    assert d.action == "buy"
    assert d.params == {"tokenAddress": "0xabc", "usdcAmount": "5.0"}
    assert d.reasoning == "momentum"
