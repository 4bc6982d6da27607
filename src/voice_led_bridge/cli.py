"""Command-line client for the bridge's admin HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import string
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional

import httpx
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "VOICE_LED_"
SPEED_CHOICES = ("slow", "medium", "fast")

# Settings forwarded as-is to PUT /users/{id}
_SETTING_ARGS = (
    "device",
    "led",
    "color",
    "join_effect",
    "join_duration",
    "next_effect",
    "speed",
    "brightness",
    "leave_effect",
    "leave_duration",
)


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    api_bearer_token: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voice-led",
        description=(
            "CLI for the voice LED bridge API. Uses VOICE_LED_* env vars for "
            "defaults and prints JSON (default) or YAML. Examples: "
            "`voice-led users list`, `voice-led users set 1234 --device kitchen --led 2`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the bridge API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=(
            f"Bearer token for authentication (env: {ENV_PREFIX}API_BEARER_TOKEN). "
            "Overrides Authorization header when set."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_user_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Check API health (GET /health -> status and broker state)",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show broker state and user counts (GET /status)",
    )
    status.set_defaults(func=_cmd_status)


def _add_user_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    users = subparsers.add_parser(
        "users",
        help="Manage per-user LED configuration",
        description=(
            "List, inspect and edit the Discord users whose voice presence drives "
            "an LED. Responses are user configuration objects."
        ),
    )
    user_sub = users.add_subparsers(dest="user_command", required=True)

    list_cmd = user_sub.add_parser("list", help="List users, newest first (GET /users)")
    list_cmd.add_argument(
        "--enabled-only",
        action="store_true",
        help="Only show users whose configuration is enabled",
    )
    list_cmd.set_defaults(func=_cmd_users_list)

    get = user_sub.add_parser("get", help="Show one user (GET /users/{id})")
    get.add_argument("user_id", help="Discord user ID")
    get.set_defaults(func=_cmd_users_get)

    set_cmd = user_sub.add_parser(
        "set",
        help="Create or replace a user's configuration (PUT /users/{id})",
        description=(
            "Stores the full configuration for a user. --device and --led are "
            "required; any other setting left out is reset to its default."
        ),
    )
    set_cmd.add_argument("user_id", help="Discord user ID")
    set_cmd.add_argument("--username", help="Display name used in logs")
    set_cmd.add_argument(
        "--device",
        required=True,
        help="Controller device name or full topic (e.g. kitchen or lights/kitchen/control)",
    )
    set_cmd.add_argument("--led", type=int, required=True, help="LED index on the controller")
    set_cmd.add_argument("--color", help="Hex color such as #FF0000 (default #00FFAA)")
    set_cmd.add_argument(
        "--join-effect",
        help="Join effect: wakeup, pulse, breathe or solid; anything else sets a static color",
    )
    set_cmd.add_argument("--join-duration", type=int, help="Wakeup duration in ms (default 6000)")
    set_cmd.add_argument("--next-effect", help="Effect after wakeup finishes (default breathe)")
    set_cmd.add_argument("--speed", choices=SPEED_CHOICES, help="Animation speed (default medium)")
    set_cmd.add_argument("--brightness", type=int, help="Brightness 0-255 for solid (default 255)")
    set_cmd.add_argument(
        "--leave-effect",
        help="Leave effect: sleep fades out; anything else switches the LED off",
    )
    set_cmd.add_argument("--leave-duration", type=int, help="Sleep duration in ms (default 4000)")
    set_cmd.set_defaults(func=_cmd_users_set)

    remove = user_sub.add_parser("remove", help="Delete a user (DELETE /users/{id})")
    remove.add_argument("user_id", help="Discord user ID")
    remove.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    remove.set_defaults(func=_cmd_users_remove)

    enable = user_sub.add_parser("enable", help="Enable a user (POST /users/{id}/enable)")
    enable.add_argument("user_id", help="Discord user ID")
    enable.set_defaults(func=_cmd_users_enable)

    disable = user_sub.add_parser("disable", help="Disable a user (POST /users/{id}/disable)")
    disable.add_argument("user_id", help="Discord user ID")
    disable.set_defaults(func=_cmd_users_disable)

    toggle = user_sub.add_parser("toggle", help="Flip a user's enabled flag")
    toggle.add_argument("user_id", help="Discord user ID")
    toggle.set_defaults(func=_cmd_users_toggle)

    for name, func, help_text in (
        ("preview", _cmd_users_preview, "Show the command a join/leave would publish"),
        ("test", _cmd_users_test, "Publish the join/leave command now"),
    ):
        cmd = user_sub.add_parser(name, help=help_text)
        cmd.add_argument("user_id", help="Discord user ID")
        cmd.add_argument("--kind", choices=["join", "leave"], default="join")
        cmd.set_defaults(func=func)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")

    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        api_bearer_token=args.api_bearer_token,
        output=output,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers.setdefault("Authorization", f"ApiKey {config.api_key}")
    if config.api_bearer_token:
        headers["Authorization"] = f"Bearer {config.api_bearer_token}"

    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2, ensure_ascii=False)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    _print_output(data, config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_users_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    params = {"enabled_only": "true"} if args.enabled_only else None
    data = _handle_response(client.get("/users", params=params))
    _print_output(data, config.output)


def _cmd_users_get(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/users/{args.user_id}"))
    _print_output(data, config.output)


def _settings_payload(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for name in _SETTING_ARGS:
        value = getattr(args, name, None)
        if value is not None:
            payload[name] = value
    if "led" in payload and payload["led"] < 0:
        raise CliError("LED index must not be negative.")
    if "brightness" in payload:
        _validate_byte_range("brightness", payload["brightness"])
    if "color" in payload:
        payload["color"] = _normalize_color_hex(payload["color"])
    for name in ("join_duration", "leave_duration"):
        if name in payload and payload[name] < 0:
            raise CliError(f"{name.replace('_', ' ').capitalize()} must not be negative.")
    if getattr(args, "username", None):
        payload["username"] = args.username
    return payload


def _cmd_users_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = _settings_payload(args)
    data = _handle_response(client.put(f"/users/{args.user_id}", json=payload))
    _print_output(data, config.output)


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


def _cmd_users_remove(
    config: ClientConfig,
    client: httpx.Client,
    args: argparse.Namespace,
    confirm: Callable[[str], bool] = _confirm,
) -> None:
    if not args.yes:
        user = _handle_response(client.get(f"/users/{args.user_id}"))
        label = user.get("username") or args.user_id
        if not confirm(f"Remove LED configuration for {label}? Type 'yes' to confirm: "):
            _print_output({"status": "cancelled", "user_id": args.user_id}, config.output)
            return
    _handle_response(client.delete(f"/users/{args.user_id}"))
    _print_output({"status": "deleted", "user_id": args.user_id}, config.output)


def _cmd_users_enable(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/users/{args.user_id}/enable"))
    _print_output(data, config.output)


def _cmd_users_disable(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/users/{args.user_id}/disable"))
    _print_output(data, config.output)


def _cmd_users_toggle(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    user = _handle_response(client.get(f"/users/{args.user_id}"))
    action = "disable" if user.get("enabled") else "enable"
    data = _handle_response(client.post(f"/users/{args.user_id}/{action}"))
    _print_output(data, config.output)


def _cmd_users_preview(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(
        client.get(f"/users/{args.user_id}/preview", params={"kind": args.kind})
    )
    _print_output(data, config.output)


def _cmd_users_test(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(
        client.post(f"/users/{args.user_id}/test", params={"kind": args.kind})
    )
    _print_output(data, config.output)
    if data and data.get("status") != "published":
        raise CliError(f"Publish was not delivered: {data.get('reason') or data.get('status')}")


def _validate_byte_range(name: str, value: int) -> None:
    if value < 0 or value > 255:
        raise CliError(f"{name.capitalize()} must be between 0 and 255.")


def _normalize_color_hex(value: str) -> str:
    normalized = value.strip()
    if normalized.startswith("#"):
        normalized = normalized[1:]
    if len(normalized) == 3:
        normalized = "".join(ch * 2 for ch in normalized)
    if len(normalized) != 6 or any(ch not in string.hexdigits for ch in normalized):
        raise CliError("Color must be a hex value like ff3366 or #ff3366.")
    return f"#{normalized.upper()}"


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        if not args.command:
            parser.print_help()
            sys.exit(1)

        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
