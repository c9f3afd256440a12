"""CLI entry point for blogsync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .auth import AuthClient
from .config import load_config
from .remote import create_backend
from .sync import ArticleSync


# Context fields picked up from ``logger.x(..., extra={...})``
CONTEXT_FIELDS = ("user_id", "article_id", "event")

# Client libraries that are chatty below WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "websockets")

LOG_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any article or session context attached."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging for the CLI.

    An explicit ``log_level`` wins over ``verbose``. Below debug level the
    HTTP and websocket client libraries are held at WARNING so request
    lines do not drown out sync events.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")
        )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP surface."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .dashboard import create_app
    except ImportError as e:
        print(f"Dashboard dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install blogsync[dashboard]", file=sys.stderr)
        return 1

    host = args.host or config.dashboard.host
    port = args.port or config.dashboard.port

    service, feed = create_backend(config)
    sync = ArticleSync(service, feed, table=config.remote.table)
    auth = AuthClient(config.remote, config.auth)

    print("Starting blogsync")
    print(f"Backend: {config.remote.backend} ({config.remote.url})")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, sync, auth)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        await service.close()

    return 0


async def cmd_articles(args: argparse.Namespace) -> int:
    """Print the article list for the persisted session."""
    config = load_config(args.config)
    service, feed = create_backend(config)
    sync = ArticleSync(service, feed, table=config.remote.table)
    auth = AuthClient(config.remote, config.auth)

    try:
        session = await auth.get_session()
        if session is None:
            print("Not signed in. Sign in through the dashboard first.", file=sys.stderr)
            return 1

        service.set_access_token(session.access_token)
        if not await sync.load_articles():
            print("Could not load articles", file=sys.stderr)
            return 1

        articles = sync.list_articles()
        if args.json:
            print(json.dumps([a.to_dict() for a in articles], indent=2))
        else:
            for article in articles:
                stamp = article.updated_at or article.created_at
                when = stamp.strftime("%b %d, %Y %H:%M") if stamp else ""
                print(f"[{article.id}] {article.title} by {article.user_name or '?'} {when}")
    finally:
        await auth.close()
        await service.close()

    return 0


async def cmd_logout(args: argparse.Namespace) -> int:
    """Sign out and forget the persisted session."""
    config = load_config(args.config)
    auth = AuthClient(config.remote, config.auth)
    try:
        await auth.get_session()
        await auth.sign_out()
    finally:
        await auth.close()
    print("Signed out")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="blogsync",
        description="Article list synchronized with a hosted blog backend",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP surface")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    articles_parser = subparsers.add_parser("articles", help="List articles once")
    articles_parser.add_argument(
        "--json",
        action="store_true",
        help="Output articles as JSON",
    )
    articles_parser.set_defaults(func=cmd_articles)

    logout_parser = subparsers.add_parser("logout", help="Sign out")
    logout_parser.set_defaults(func=cmd_logout)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
