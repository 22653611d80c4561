"""VictoriaMetrics cluster operator main application."""

import asyncio
import logging
import signal
from typing import Optional

from vm_operator import __version__
from vm_operator.cluster import ClusterConnection, KubeClient
from vm_operator.config import Settings, get_settings
from vm_operator.engine import OrchestrationEngine
from vm_operator.queue import WorkQueue
from vm_operator.watch import Controller, ResourceWatcher

logger = logging.getLogger(__name__)


class Application:
    """Main application orchestrator."""

    def __init__(self, settings: Settings):
        """
        Initialize application.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.connection: Optional[ClusterConnection] = None
        self.controller: Optional[Controller] = None
        self._shutdown = False

    async def start(self) -> None:
        """Start the application."""
        logger.info("🚀 Starting VictoriaMetrics cluster operator...")
        logger.info(f"   Version: {__version__}")
        logger.info(f"   Namespace: {self.settings.watch_namespace or 'all'}")
        logger.info(f"   Workers: {self.settings.workers}")

        self.connection = ClusterConnection(self.settings)
        client = KubeClient(self.connection)
        engine = OrchestrationEngine(client, self.settings)
        queue = WorkQueue(
            backoff_base=self.settings.error_backoff_base,
            backoff_max=self.settings.error_backoff_max,
        )
        watcher = ResourceWatcher(self.connection, namespace=self.settings.watch_namespace)
        self.controller = Controller(engine, queue, self.settings, watcher=watcher)
        await self.controller.start()

        logger.info("✓ Operator started successfully")

        # Run until shutdown signal
        try:
            while not self._shutdown:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("🛑 Shutting down operator...")
        self._shutdown = True

        if self.controller:
            await self.controller.stop()
        if self.connection:
            self.connection.close()

        logger.info("✓ Operator stopped")

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, initiating shutdown...")
        self._shutdown = True


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = Application(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    try:
        await app.start()
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
