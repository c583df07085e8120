from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional, Tuple

from colorama import Fore, Style, init as colorama_init

from .client import fetch_via_proxy
from .config import load_config_from_env
from .errors import ParseError, TunnelError
from .framer import TunnelResponse

logger = logging.getLogger("pushtunnel.main")

EXIT_OK = 0
EXIT_HTTP_ERROR = 1
EXIT_TUNNEL_ERROR = 2


def _parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="pushtunnel",
        description="One HTTP/1.1 request through a SOCKS5 or HTTP CONNECT proxy.",
    )
    ap.add_argument("url", help="Target URL (http:// or https://)")
    ap.add_argument("--proxy", default=os.environ.get("PUSHTUNNEL_PROXY"), help="Proxy URL (socks5://, http://, relay://); defaults to PUSHTUNNEL_PROXY")
    ap.add_argument("--socks", action="store_true", help="Treat a scheme-less --proxy as SOCKS5 instead of HTTP")
    ap.add_argument("-X", "--request", dest="method", default="GET", help="HTTP method")
    ap.add_argument("-H", "--header", dest="headers", action="append", default=[], help="Extra header 'Name: value' (repeatable)")
    ap.add_argument("-d", "--data", dest="data", help="Request body; @file reads it from a file")
    ap.add_argument("--json", dest="as_json", action="store_true", help="Send body with Content-Type: application/json")
    ap.add_argument("--timeout", dest="io_timeout", type=float, help="Override PUSHTUNNEL_IO_TIMEOUT (seconds)")
    ap.add_argument("--dial-timeout", dest="dial_timeout", type=float, help="Override PUSHTUNNEL_DIAL_TIMEOUT (seconds)")
    ap.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification (diagnostics only)")
    ap.add_argument("--relay-url", dest="relay_url", help="Override PUSHTUNNEL_RELAY_URL")
    ap.add_argument("--diag", action="store_true", help="Per-phase diagnostic logging")
    ap.add_argument("--log-level", dest="log_level", help="Override PUSHTUNNEL_LOG_LEVEL")
    ap.add_argument("-i", "--include", action="store_true", help="Print response headers")
    return ap.parse_args(argv)


def _split_headers(raw: List[str]) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for h in raw:
        if ":" not in h:
            raise ValueError(f"bad header {h!r}, expected 'Name: value'")
        k, v = h.split(":", 1)
        out.append((k.strip(), v.strip()))
    return out


def _read_body(data: Optional[str]) -> Optional[bytes]:
    if data is None:
        return None
    if data.startswith("@"):
        with open(data[1:], "rb") as f:
            return f.read()
    return data.encode("utf-8")


def _print_response(resp: TunnelResponse, include: bool) -> None:
    color = Fore.GREEN if resp.ok else (Fore.YELLOW if resp.status < 500 else Fore.RED)
    print(f"{color}{resp.status} {resp.status_text}{Style.RESET_ALL}", file=sys.stderr)
    if include:
        for k, v in resp.headers:
            print(f"{Style.DIM}{k}: {v}{Style.RESET_ALL}", file=sys.stderr)
    sys.stdout.write(resp.text())
    if resp.body and not resp.body.endswith(b"\n"):
        sys.stdout.write("\n")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_cli_args(argv)
    cli_to_env = {
        "io_timeout": "PUSHTUNNEL_IO_TIMEOUT",
        "dial_timeout": "PUSHTUNNEL_DIAL_TIMEOUT",
        "relay_url": "PUSHTUNNEL_RELAY_URL",
        "log_level": "PUSHTUNNEL_LOG_LEVEL",
    }
    for attr, env_key in cli_to_env.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))
    if args.insecure:
        os.environ["PUSHTUNNEL_VERIFY_TLS"] = "0"
    if args.diag:
        os.environ["PUSHTUNNEL_DIAG"] = "on"

    cfg = load_config_from_env()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=cfg.log_level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    colorama_init(autoreset=True)

    if not args.proxy:
        print("pushtunnel: --proxy or PUSHTUNNEL_PROXY is required", file=sys.stderr)
        return EXIT_TUNNEL_ERROR
    try:
        headers = _split_headers(args.headers)
        body = _read_body(args.data)
    except (ValueError, OSError) as e:
        print(f"pushtunnel: {e}", file=sys.stderr)
        return EXIT_TUNNEL_ERROR
    if args.as_json and not any(k.lower() == "content-type" for k, _ in headers):
        headers.append(("Content-Type", "application/json"))

    try:
        resp = asyncio.run(
            fetch_via_proxy(
                args.proxy,
                args.url,
                method=args.method,
                headers=headers,
                body=body,
                config=cfg,
                default_scheme="socks5" if args.socks else "http",
            )
        )
    except ParseError as e:
        print(f"{Fore.RED}pushtunnel: bad proxy or URL: {e}{Style.RESET_ALL}", file=sys.stderr)
        return EXIT_TUNNEL_ERROR
    except TunnelError as e:
        print(f"{Fore.RED}pushtunnel: {e.phase} failed: {e.detail}{Style.RESET_ALL}", file=sys.stderr)
        return EXIT_TUNNEL_ERROR
    except KeyboardInterrupt:
        return EXIT_TUNNEL_ERROR

    _print_response(resp, args.include)
    return EXIT_OK if resp.ok else EXIT_HTTP_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
