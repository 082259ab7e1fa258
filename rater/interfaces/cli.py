import argparse
import asyncio
import concurrent.futures
import json
import logging
import signal
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from rater.crosscutting.config import ConfigError, Settings
from rater.crosscutting.logging import setup_logging
from rater.domain.entities import Provider, SyncMode
from rater.domain.errors import AuthenticationRequired, AuthorizationDenied, RemoteUnavailable
from rater.interfaces.container import Container, Runtime
from rater.interfaces.http import HTTPServer


class CLI:
    """Command Line Interface for the track rater."""

    def __init__(self):
        """Initialize CLI."""
        # .env is loaded in run() to keep construction side-effect free for tests
        self.parser = self._create_parser()
        self._start_time = None
        self._runtime: Optional[Runtime] = None
        self._container: Optional[Container] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='rater',
            description='Rate Spotify tracks into a Google Sheet while following live playback'
        )
        parser.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='INFO',
            help='Set logging level'
        )
        parser.add_argument(
            '--log-file',
            default=None,
            help='Also write structured logs to this file'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        serve_parser = subparsers.add_parser('serve', help='Run the HTTP interface and the sync engine')
        serve_parser.add_argument('--host', default=None, help='Bind address (default from RATER_HTTP_HOST)')
        serve_parser.add_argument('--port', type=int, default=None, help='Port (default from RATER_HTTP_PORT)')
        serve_parser.add_argument(
            '--mode',
            choices=[m.value for m in SyncMode],
            default=None,
            help='Start the sync engine in this mode right away'
        )
        serve_parser.add_argument('--debug', action='store_true', help='Flask debug mode')

        subparsers.add_parser('status', help='Show configuration and authorization status')
        subparsers.add_parser('logout', help='Forget all stored tokens')
        subparsers.add_parser('stats', help='Print rating statistics')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Stop the engine and the event loop if they are running."""
        logger = logging.getLogger(__name__)
        runtime, self._runtime = self._runtime, None
        if runtime is not None and self._container is not None:
            try:
                runtime.run(self._container.close(), timeout=5)
            except (RuntimeError, concurrent.futures.TimeoutError) as e:
                logger.warning(f"Failed to stop services cleanly: {e}")
            runtime.stop()
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _load_settings(self) -> Settings:
        load_dotenv()
        return Settings.from_env()

    def _create_container(self, settings: Settings) -> Container:
        self._container = Container(settings)
        return self._container

    def _serve(self, args: argparse.Namespace) -> None:
        """Run the HTTP interface with the event loop in a background thread."""
        logger = logging.getLogger(__name__)
        settings = self._load_settings().require()
        container = self._create_container(settings)

        self._runtime = Runtime().start()
        self._runtime.run(container.start())
        if args.mode:
            self._runtime.run(container.engine.start(SyncMode(args.mode)))

        server = HTTPServer(
            container,
            self._runtime,
            host=args.host or settings.http_host,
            port=args.port or settings.http_port,
            debug=args.debug,
        )
        logger.info(f"Open http://{server.host}:{server.port}/ to begin")
        server.run()

    def _status(self, args: argparse.Namespace) -> None:
        settings = self._load_settings()
        container = self._create_container(settings)
        print(json.dumps({
            'config': settings.summary(),
            'auth': container.session.status().to_dict(),
        }, indent=2))

    def _logout(self, args: argparse.Namespace) -> None:
        settings = self._load_settings()
        container = self._create_container(settings)
        container.session.logout()
        print("Logged out of Spotify and Google")

    def _stats(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        settings = self._load_settings().require()
        container = self._create_container(settings)

        # Without the HTTP callback a new Google token cannot be obtained here
        if not container.session.is_authorized(Provider.GOOGLE):
            logger.error("Google authorization required; run 'rater serve' and sign in first")
            sys.exit(1)
        try:
            stats = asyncio.run(container.ratings.stats())
        except AuthenticationRequired:
            logger.error("Google authorization required; run 'rater serve' and sign in first")
            sys.exit(1)

        data = stats.to_dict()
        print(f"Total rated: {data['total']}  (today: {data['today']})")
        print(f"Average rating: {data['averageRating']}")
        print("Distribution:")
        for rating, count in data['distribution'].items():
            print(f"  {rating:>4}: {count}")
        if data['topArtists']:
            print("Top artists:")
            for artist in data['topArtists']:
                print(f"  {artist['name']} ({artist['count']})")

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                sys.exit(1)

            setup_logging(args.log_level, log_file=args.log_file)

            if args.command == 'serve':
                self._setup_signal_handlers()
                self._serve(args)
            elif args.command == 'status':
                self._status(args)
            elif args.command == 'logout':
                self._logout(args)
            elif args.command == 'stats':
                self._stats(args)
            else:
                self.parser.print_help()
                sys.exit(1)

        except KeyboardInterrupt:
            logger = logging.getLogger(__name__)
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except (ConfigError, AuthorizationDenied, RemoteUnavailable) as e:
            logger = logging.getLogger(__name__)
            logger.error(f"CLI error: {e}")
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
