"""CLI entry point for the OAuth gateway.

Commands:
    serve      Run the gateway with uvicorn
    gen-keys   Print a fresh state key and IV as environment lines
    discover   Fetch and print a running gateway's discovery document
"""
import argparse
import base64
import json
import os
import secrets
import sys

import requests

from config import CONFIG_FILE_ENV, ConfigError, load_config

DISCOVERY_PATH = "/.well-known/oauth-authorization-server"


def generate_keys() -> dict:
    """Fresh key material for GATEWAY_STATE_KEY / GATEWAY_STATE_IV."""
    encode = lambda raw: base64.urlsafe_b64encode(raw).decode().rstrip("=")
    return {
        "GATEWAY_STATE_KEY": encode(secrets.token_bytes(32)),
        "GATEWAY_STATE_IV": encode(secrets.token_bytes(16)),
    }


def fetch_discovery(base_url: str, timeout: float = 10.0) -> dict:
    """Fetch a gateway's authorization server metadata."""
    response = requests.get(f"{base_url.rstrip('/')}{DISCOVERY_PATH}", timeout=timeout)
    response.raise_for_status()
    return response.json()


def cmd_serve(args) -> int:
    import uvicorn

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    host = args.host or config.host
    port = args.port or config.port
    if args.config:
        # get_app() runs in uvicorn and reloads config from the environment
        os.environ[CONFIG_FILE_ENV] = os.path.abspath(args.config)
    print(f"Starting OAuth gateway on {host}:{port} for {config.base_url}")
    uvicorn.run("main:get_app", factory=True, host=host, port=port)
    return 0


def cmd_gen_keys(args) -> int:
    for name, value in generate_keys().items():
        print(f"{name}={value}")
    return 0


def cmd_discover(args) -> int:
    try:
        document = fetch_discovery(args.url, timeout=args.timeout)
    except requests.RequestException as e:
        print(f"Could not fetch discovery document: {e}", file=sys.stderr)
        return 1
    except ValueError:
        print("Discovery endpoint did not return JSON", file=sys.stderr)
        return 1
    print(json.dumps(document, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="oauth-gateway", description="OAuth 2.0 gateway")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the gateway")
    serve.add_argument("--config", help="JSON config file (overrides GATEWAY_CONFIG_FILE)")
    serve.add_argument("--host", help="bind address")
    serve.add_argument("--port", type=int, help="bind port")
    serve.set_defaults(func=cmd_serve)

    gen = sub.add_parser("gen-keys", help="print fresh state key material")
    gen.set_defaults(func=cmd_gen_keys)

    discover = sub.add_parser("discover", help="print a gateway's discovery document")
    discover.add_argument("--url", required=True, help="gateway base URL")
    discover.add_argument("--timeout", type=float, default=10.0)
    discover.set_defaults(func=cmd_discover)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
