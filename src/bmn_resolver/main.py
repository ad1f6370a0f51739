"""Main entry point - runs the resolver coordination core."""

import asyncio
import logging
import signal
from typing import Optional

from bmn_resolver.chains import build_chain_configs
from bmn_resolver.config import Settings, get_settings
from bmn_resolver.ledger.database import Database
from bmn_resolver.ledger.swaps import SwapLedger
from bmn_resolver.ledger.vault import SecretVault
from bmn_resolver.services.coordinator import CoordinationEngine
from bmn_resolver.services.scanner import ActionScanner
from bmn_resolver.services.submitter import DryRunSubmitter, TransactionSubmitter
from bmn_resolver.utils.locks import KeyLockRegistry
from bmn_resolver.watcher.chain import ChainWatcher
from bmn_resolver.watcher.client import ChainClient
from bmn_resolver.watcher.factory import create_watcher, get_chain_client

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    log_level = logging.DEBUG if settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Wires watchers, the coordination engine and the action scanner."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        submitter: Optional[TransactionSubmitter] = None,
    ):
        self.settings = settings or get_settings()
        self.submitter = submitter
        self.database = Database.from_settings(self.settings)
        self.chains = build_chain_configs(self.settings)
        self.clients: list[ChainClient] = []
        self.watchers: list[ChainWatcher] = []
        self.engine: Optional[CoordinationEngine] = None
        self.scanner: Optional[ActionScanner] = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services and block until shutdown."""
        configure_logging(self.settings)

        logger.info("Starting bmn-resolver...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.debug(f"Settings: {self.settings.get_safe_dict()}")

        await self.database.open()
        logger.info("Database initialized")

        try:
            lock_timeout = self.settings.lock_timeout_seconds
            ledger = SwapLedger(self.database, KeyLockRegistry("ledger", timeout=lock_timeout))
            vault = SecretVault(self.database, KeyLockRegistry("vault", timeout=lock_timeout))
            action_locks = KeyLockRegistry("actions", timeout=lock_timeout)
            events: asyncio.Queue = asyncio.Queue()

            self.engine = CoordinationEngine(ledger, vault, self.chains, action_locks, events)
            self.scanner = ActionScanner.from_settings(
                self.settings, ledger, vault, self._get_submitter(), action_locks
            )

            for chain in self.chains.values():
                client = get_chain_client(chain, self.settings)
                self.clients.append(client)
                self.watchers.append(create_watcher(chain, client, self.settings))

            self.engine.start()
            for watcher in self.watchers:
                await watcher.start(events)
            self.scanner.start()
            logger.info(f"Watching {', '.join(w.name for w in self.watchers)}")

            # Wait for shutdown signal
            await self._shutdown_event.wait()
        except Exception:
            logger.exception("Startup failed")
            raise
        finally:
            await self._cleanup()

    def _get_submitter(self) -> TransactionSubmitter:
        if self.submitter is not None:
            return self.submitter
        if not self.settings.dry_run:
            logger.warning("No transaction submitter configured - actions are simulated")
        return DryRunSubmitter()

    async def _cleanup(self):
        """Stop services in dependency order and release resources."""
        logger.info("Cleaning up...")

        for watcher in self.watchers:
            await watcher.stop()
        if self.scanner:
            await self.scanner.stop()
        if self.engine:
            await self.engine.stop()
        for client in self.clients:
            await client.close()

        await self.database.close()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
