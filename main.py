"""Command line entry point for the cryptobot backend."""

from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from typing import Optional, Sequence

from aiohttp import web

from cryptobot.api import build_context, create_app
from cryptobot.config import ExchangeConfig, SecurityConfig, Settings, load_settings
from cryptobot.database import DatabaseManager
from cryptobot.monitoring import configure_logging
from cryptobot.security import issue_token


logger = logging.getLogger(__name__)


def run_server(settings: Settings, host: Optional[str] = None, port: Optional[int] = None) -> None:
    exchange_config = ExchangeConfig.from_env(settings)
    security_config = SecurityConfig.from_env()
    context = build_context(settings, exchange_config, security_config)
    app = create_app(context)
    host = host or settings.api_host
    port = port or settings.api_port
    logger.info('Serving API on http://%s:%s (venue: %s)', host, port, exchange_config.exchange_id)
    web.run_app(app, host=host, port=port, print=None)


def init_database(settings: Settings) -> None:
    database = DatabaseManager(settings.database_url)
    database.close()
    logger.info('Database schema ready at %s', settings.database_url)


def print_token(subject: str, email: Optional[str], name: Optional[str], expires_in: int) -> None:
    token = issue_token(
        SecurityConfig.from_env(),
        subject,
        email=email,
        name=name,
        expires_in=timedelta(seconds=expires_in),
    )
    print(token)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Crypto trading dashboard backend')
    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='Run the HTTP API and price broadcast')
    serve.add_argument('--host', help='Bind address (defaults to API_HOST)')
    serve.add_argument('--port', type=int, help='Port (defaults to PORT)')

    sub.add_parser('init-db', help='Create the database schema')

    token = sub.add_parser('issue-token', help='Issue a signed identity token for local development')
    token.add_argument('--subject', required=True)
    token.add_argument('--email')
    token.add_argument('--name')
    token.add_argument('--expires-in', type=int, default=3600, help='Lifetime in seconds')

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)
    if args.command == 'serve':
        run_server(settings, args.host, args.port)
    elif args.command == 'init-db':
        init_database(settings)
    elif args.command == 'issue-token':
        print_token(args.subject, args.email, args.name, args.expires_in)
    else:  # pragma: no cover
        raise ValueError(f'Unknown command {args.command}')


if __name__ == '__main__':
    main()
