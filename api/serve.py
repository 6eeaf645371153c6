"""
Server entry point.

    python api/serve.py --port 8081
    python api/serve.py --ssl-key key.pem --ssl-certificate cert.pem

Without an explicit port the server listens on 8081, or 10443 when TLS is
configured.
"""

from __future__ import annotations

import argparse
import sys

import uvicorn

from core.settings import SettingsError, load_settings
from main import configure_logging, create_app

HTTP_PORT = 8081
HTTPS_PORT = 10443


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Benchmark results HTTP API")
    parser.add_argument("--host", default="0.0.0.0", help="address to bind")
    parser.add_argument("--port", type=int, default=0, help="port on which to listen")
    parser.add_argument("--ssl-key", default="", help="path of the SSL key file")
    parser.add_argument("--ssl-certificate", default="", help="path of the SSL certificate file")
    return parser


def resolve_port(port: int, *, ssl: bool) -> int:
    if port:
        return port
    return HTTPS_PORT if ssl else HTTP_PORT


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    ssl = bool(args.ssl_key or args.ssl_certificate)
    if ssl and not (args.ssl_key and args.ssl_certificate):
        print("Error: both --ssl-key and --ssl-certificate are required for TLS", file=sys.stderr)
        return 1

    try:
        settings = load_settings()
    except SettingsError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=args.host,
        port=resolve_port(args.port, ssl=ssl),
        ssl_keyfile=args.ssl_key or None,
        ssl_certfile=args.ssl_certificate or None,
        timeout_keep_alive=360,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
