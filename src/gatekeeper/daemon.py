"""
USB Gatekeeper Daemon.

Main entry point that wires the system together:
- Device Event Source (udev)
- Rule Store and Policy Evaluator
- Enforcement Actuator (sysfs)
- Authorization Engine
- REST API (optional)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any

from gatekeeper import __version__
from gatekeeper.config import GatekeeperConfig, load_config, validate_config
from gatekeeper.core.engine import AuthorizationEngine
from gatekeeper.errors import GatekeeperError
from gatekeeper.interceptor.base import Authorizer, EventSource
from gatekeeper.interceptor.linux import (
    get_platform_authorizer,
    get_platform_event_source,
    require_privileges,
)
from gatekeeper.policy.engine import PolicyEvaluator
from gatekeeper.policy.models import Action
from gatekeeper.policy.parser import validate_rules
from gatekeeper.policy.store import RuleStore
from gatekeeper.policy.watcher import RuleFileWatcher

logger = logging.getLogger("gatekeeper")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "info", log_file: str | None = None) -> None:
    """Configure root logging once for the process."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def build_store(config: GatekeeperConfig) -> RuleStore:
    """Create the rule store with the configured default action."""
    evaluator = PolicyEvaluator(
        default_action=Action(config.policy.default_action),
        permit_default_allow=config.policy.permit_default_allow,
    )
    return RuleStore(config.policy.rules_file, evaluator)


class GatekeeperDaemon:
    """
    Main USB Gatekeeper daemon.

    Runs the authorization engine over live udev events until signalled.
    """

    def __init__(
        self,
        config: GatekeeperConfig,
        source: EventSource | None = None,
        authorizer: Authorizer | None = None,
    ) -> None:
        """
        Initialize daemon with configuration.

        Args:
            config: Validated configuration object
            source: Event source to use instead of the platform one
            authorizer: Authorizer to use instead of the platform one
        """
        self.config = config
        self._source = source
        self._authorizer = authorizer
        self._store: RuleStore | None = None
        self._engine: AuthorizationEngine | None = None
        self._api_server: Any = None
        self._api_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._watcher: RuleFileWatcher | None = None
        self._watch_task: asyncio.Task | None = None

        self.running = False
        self._shutdown_event = asyncio.Event()
        self._start_time: datetime | None = None

    @property
    def store(self) -> RuleStore:
        """Get or load the rule store."""
        if self._store is None:
            self._store = build_store(self.config)
        return self._store

    @property
    def engine(self) -> AuthorizationEngine:
        """Get or initialize the authorization engine."""
        if self._engine is None:
            self._engine = AuthorizationEngine(
                store=self.store,
                authorizer=self._authorizer or get_platform_authorizer(self.config.interceptor),
                source=self._source or get_platform_event_source(self.config.interceptor),
                max_concurrent=self.config.engine.max_concurrent,
            )
        return self._engine

    async def start(self) -> None:
        """Start the daemon and all services."""
        logger.info("Starting USB Gatekeeper daemon v%s", __version__)
        require_privileges(self.config.daemon.require_root)

        logger.info("Loading rules from: %s", self.config.policy.rules_file)
        rules = self.store.list_rules()
        logger.info("Loaded %d rules", len(rules))
        for warning in validate_rules(rules):
            logger.warning("Rule warning: %s", warning)

        self.running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        await self.engine.start()
        self._retry_task = asyncio.create_task(self._retry_loop())

        if self.config.policy.hot_reload:
            self._watcher = RuleFileWatcher(self.store, self.config.policy.reload_interval)
            self._watch_task = asyncio.create_task(self._watcher.watch())

        if self.config.api.enabled:
            await self._start_api_server()

        logger.info("Waiting for USB events...")

    async def stop(self) -> None:
        """Stop the daemon gracefully. Enforced decisions stay in place."""
        logger.info("Stopping USB Gatekeeper daemon...")
        self.running = False
        self._shutdown_event.set()

        if self._retry_task is not None:
            self._retry_task.cancel()
            await asyncio.gather(self._retry_task, return_exceptions=True)
            self._retry_task = None

        if self._watch_task is not None:
            self._watcher.stop()
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._watch_task = None

        if self._api_server is not None:
            self._api_server.should_exit = True
            if self._api_task is not None:
                await asyncio.gather(self._api_task, return_exceptions=True)
            self._api_server = None

        if self._engine is not None:
            await self._engine.stop()

        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Run until a shutdown signal, or until the event source fails."""
        await self.start()

        try:
            waiter = asyncio.create_task(self._shutdown_event.wait())
            watched = {waiter, self.engine.worker}
            if self._api_task is not None:
                watched.add(self._api_task)

            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()

            worker = self.engine.worker
            if worker in done and not worker.cancelled():
                # Re-raise the failure of the event source
                worker.result()
        finally:
            await self.stop()

    async def _retry_loop(self) -> None:
        """Periodically re-enforce devices whose enforcement failed."""
        while self.running:
            await asyncio.sleep(self.config.engine.retry_interval)
            pending = await self.engine.retry_pending()
            if pending:
                logger.warning("%d device(s) still awaiting enforcement", len(pending))

    async def _start_api_server(self) -> None:
        """Start the FastAPI server in the daemon's event loop."""
        import uvicorn

        from gatekeeper.api import configure_services, create_app

        logger.info("Starting API server on %s:%s", self.config.api.host, self.config.api.port)

        app = create_app(debug=self.config.daemon.log_level == "debug")
        configure_services(
            app=app,
            engine=self.engine,
            api_key=self.config.api.api_key,
        )

        config = uvicorn.Config(
            app=app,
            host=self.config.api.host,
            port=self.config.api.port,
            log_level=self.config.daemon.log_level,
            access_log=False,
        )
        self._api_server = uvicorn.Server(config)
        self._api_task = asyncio.create_task(self._api_server.serve())

        logger.info("API server started")

    def handle_signal(self, signum: int) -> None:
        """Handle termination signals."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal %s, initiating shutdown", sig_name)
        self.running = False
        self._shutdown_event.set()

    def get_statistics(self) -> dict[str, Any]:
        """Get daemon statistics."""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            **(self._engine.get_statistics() if self._engine else {}),
            "uptime_seconds": uptime,
            "running": self.running,
            "api_enabled": self.config.api.enabled,
        }


async def run_daemon(config: GatekeeperConfig) -> int:
    """Run the daemon with the given configuration."""
    daemon = GatekeeperDaemon(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))

    try:
        await daemon.run()
    except GatekeeperError as e:
        logger.error("%s: %s", e.kind, e)
        return e.exit_code
    except Exception as e:
        logger.exception("Daemon crashed: %s", e)
        return 1

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the daemon."""
    parser = argparse.ArgumentParser(
        prog="usb-gatekeeper-daemon",
        description="USB Gatekeeper daemon process",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        config.daemon.log_level = "debug"

    errors = validate_config(config)
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.log_file)
    return asyncio.run(run_daemon(config))


if __name__ == "__main__":
    sys.exit(main())
