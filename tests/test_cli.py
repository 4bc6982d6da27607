import json
from argparse import Namespace
from typing import Any, List

import httpx
import pytest

from voice_led_bridge.cli import (
    CliError,
    ClientConfig,
    _build_parser,
    _cmd_users_list,
    _cmd_users_remove,
    _cmd_users_set,
    _cmd_users_test,
    _cmd_users_toggle,
    _normalize_color_hex,
)

CONFIG = ClientConfig(server_url="http://test", api_key=None, api_bearer_token=None, output="json")


def _recording_client(requests: List[httpx.Request], responses: dict) -> httpx.Client:
    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = responses.get((request.method, request.url.path), (200, {}))
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    return httpx.Client(transport=httpx.MockTransport(_handler), base_url="http://test")


def _set_args(**overrides: Any) -> Namespace:
    values = {
        "user_id": "42",
        "username": None,
        "device": "kitchen",
        "led": 2,
        "color": None,
        "join_effect": None,
        "join_duration": None,
        "next_effect": None,
        "speed": None,
        "brightness": None,
        "leave_effect": None,
        "leave_duration": None,
    }
    values.update(overrides)
    return Namespace(**values)


def test_users_set_sends_only_supplied_fields(capsys) -> None:
    requests: List[httpx.Request] = []
    args = _set_args(username="alice", color="f00", brightness=0)

    with _recording_client(requests, {("PUT", "/users/42"): (200, {"user_id": "42"})}) as client:
        _cmd_users_set(CONFIG, client, args)

    assert requests[0].method == "PUT"
    assert json.loads(requests[0].content) == {
        "device": "kitchen",
        "led": 2,
        "color": "#FF0000",
        "brightness": 0,
        "username": "alice",
    }
    assert json.loads(capsys.readouterr().out) == {"user_id": "42"}


@pytest.mark.parametrize(
    "overrides",
    [{"brightness": 300}, {"led": -1}, {"color": "purple"}, {"leave_duration": -1}],
)
def test_users_set_rejects_bad_values(overrides) -> None:
    requests: List[httpx.Request] = []
    with _recording_client(requests, {}) as client:
        with pytest.raises(CliError):
            _cmd_users_set(CONFIG, client, _set_args(**overrides))
    assert requests == []


def test_server_validation_error_surfaces_detail() -> None:
    requests: List[httpx.Request] = []
    responses = {("PUT", "/users/42"): (400, {"detail": "speed must be one of slow, medium, fast"})}
    with _recording_client(requests, responses) as client:
        with pytest.raises(CliError, match="400.*speed"):
            _cmd_users_set(CONFIG, client, _set_args())


def test_users_list_enabled_only_query() -> None:
    requests: List[httpx.Request] = []
    with _recording_client(requests, {("GET", "/users"): (200, [])}) as client:
        _cmd_users_list(CONFIG, client, Namespace(enabled_only=True))
    assert requests[0].url.params["enabled_only"] == "true"


def test_users_remove_requires_confirmation(capsys) -> None:
    requests: List[httpx.Request] = []
    responses = {("GET", "/users/42"): (200, {"user_id": "42", "username": "alice"})}
    prompts: List[str] = []

    def _decline(prompt: str) -> bool:
        prompts.append(prompt)
        return False

    with _recording_client(requests, responses) as client:
        _cmd_users_remove(CONFIG, client, Namespace(user_id="42", yes=False), confirm=_decline)

    assert [r.method for r in requests] == ["GET"]
    assert "alice" in prompts[0]
    assert json.loads(capsys.readouterr().out)["status"] == "cancelled"


def test_users_remove_with_yes_skips_prompt(capsys) -> None:
    requests: List[httpx.Request] = []
    responses = {("DELETE", "/users/42"): (204, None)}

    def _fail(prompt: str) -> bool:
        raise AssertionError("should not prompt")

    with _recording_client(requests, responses) as client:
        _cmd_users_remove(CONFIG, client, Namespace(user_id="42", yes=True), confirm=_fail)

    assert [r.method for r in requests] == ["DELETE"]
    assert json.loads(capsys.readouterr().out) == {"status": "deleted", "user_id": "42"}


def test_users_toggle_flips_enabled_flag() -> None:
    requests: List[httpx.Request] = []
    responses = {
        ("GET", "/users/42"): (200, {"user_id": "42", "enabled": True}),
        ("POST", "/users/42/disable"): (200, {"user_id": "42", "enabled": False}),
    }
    with _recording_client(requests, responses) as client:
        _cmd_users_toggle(CONFIG, client, Namespace(user_id="42"))
    assert requests[-1].url.path == "/users/42/disable"


def test_users_test_reports_undelivered_publish() -> None:
    requests: List[httpx.Request] = []
    responses = {
        ("POST", "/users/42/test"): (
            200,
            {"status": "skipped_not_connected", "reason": None, "topic": "lights/kitchen/control"},
        )
    }
    with _recording_client(requests, responses) as client:
        with pytest.raises(CliError, match="skipped_not_connected"):
            _cmd_users_test(CONFIG, client, Namespace(user_id="42", kind="join"))
    assert requests[0].url.params["kind"] == "join"


def test_parser_requires_device_and_led_for_set() -> None:
    parser = _build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["users", "set", "42", "--device", "kitchen"])
    args = parser.parse_args(["users", "set", "42", "--device", "kitchen", "--led", "3", "--speed", "slow"])
    assert args.led == 3
    assert args.speed == "slow"
    assert args.func is _cmd_users_set


@pytest.mark.parametrize(
    "value,expected",
    [("#ff3366", "#FF3366"), ("ff3366", "#FF3366"), ("abc", "#AABBCC")],
)
def test_normalize_color_hex(value: str, expected: str) -> None:
    assert _normalize_color_hex(value) == expected
